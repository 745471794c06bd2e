import inspect
import logging
import os
import warnings
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .auth import Basic, Guest, Password, Username
from .config import Endpoint, Limits, Mode, Timeout
from .errors import (
    ConnectionLostError,
    FtpError,
    InvalidParamError,
    LocalIOError,
    OutOfMemoryError,
    Result,
)
from .executor import Executor
from .session import Session, run
from .settings import SSL, Security
from .transfer import ProgressCallback

logger = logging.getLogger(__name__)

HookType = Callable[..., Union[Any, Awaitable[Any]]]
Source = Union[str, Path, Any]
Target = Union[str, Path, Any]


class FtpClient:
    """
    Async FTP/FTPS client returning a ``Result`` from every operation.

    Configure it with the constructor or the ``set_*`` methods, ``connect``
    once, then run operations one at a time. Nothing here raises protocol
    errors: failures come back as a falsy ``Result`` and the message stays
    readable through ``error`` until the next operation replaces it. Call
    ``raise_for_status`` on a result to get the exception instead.

    A failed connection (timeout, protocol error, lost control channel)
    leaves the client disconnected; ``connect`` again to continue. No
    operation is retried automatically.

    Example::

        async with FtpClient("ftp.example.com", auth=Basic("u", "p")) as client:
            result = await client.list("/")
            if result:
                print(result.value.decode())
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 21,
        auth: Optional[Basic] = None,
        ssl: Optional[SSL] = None,
        mode: Mode = Mode.PASSIVE,
        timeout: Optional[Timeout] = None,
        limits: Optional[Limits] = None,
        hooks: Optional[Dict[str, HookType]] = None,
        verbose: bool = False,
        encoding: str = "utf-8",
    ) -> None:
        """Set up the client; no connection is made yet.

        Args:
            host: Server host name or address. May be set later with ``set_host``.
            port: Control connection port.
            auth: Credentials, anonymous login when None.
            ssl: TLS settings, plain FTP when None.
            mode: Passive (default) or active data connections.
            timeout: Connect and per-operation time limits.
            limits: Block size, speed limits and progress interval.
            hooks: Callbacks for "connect", "upload", "download" and "error"
                   events, plain or async. Their failures are only warned about.
            verbose: Log the command/reply dialogue at DEBUG level.
            encoding: Encoding of commands and replies on the control connection.

        Raises:
            ValueError: If the host or port is invalid.
        """
        self.endpoint: Optional[Endpoint] = Endpoint(host, port) if host else None
        self.auth: Basic = auth or Guest()
        self.ssl: SSL = ssl or SSL()
        self.mode: Mode = mode
        self.timeout: Timeout = timeout or Timeout()
        self.limits: Limits = limits or Limits()
        self.hooks: Dict[str, HookType] = hooks or {}
        self.encoding: str = encoding
        self.verbose: bool = False
        self.callback: Optional[ProgressCallback] = None
        self.data: Any = None
        self.session: Optional[Session] = None
        self.last: str = ""
        self.set_verbose(verbose)

    async def __aenter__(self) -> "FtpClient":
        """Connect and hand back the client.

        Raises:
            FtpError: If the connection cannot be established.
        """
        result = await self.connect()
        result.raise_for_status()
        return self

    async def __aexit__(self, type, value, trace) -> None:
        await self.destroy()

    @property
    def error(self) -> str:
        """Message of the last failed operation, empty after a success."""
        return self.last

    @property
    def connected(self) -> bool:
        return self.session is not None and self.session.ready

    def set_host(self, host: str, port: int = 21) -> Result:
        """Server to connect to; takes effect at the next ``connect``."""
        try:
            self.endpoint = Endpoint(host, port)
        except ValueError as error:
            return self.reject(error)
        return self.succeed()

    def set_credentials(self, user: Username, password: Password = "") -> Result:
        """Login used at the next ``connect``."""
        try:
            self.auth = Basic(user, password)
        except ValueError as error:
            return self.reject(error)
        return self.succeed()

    def set_mode(self, mode: Mode) -> Result:
        """Passive or active data connections, effective from the next transfer."""
        try:
            mode = Mode(mode)
        except ValueError as error:
            return self.reject(error)
        self.mode = mode
        if self.session is not None:
            self.session.negotiator.mode = mode
        return self.succeed()

    def set_ssl(
        self,
        policy: Security,
        verify: bool = True,
        implicit: bool = False,
        **options: Any,
    ) -> Result:
        """TLS policy used at the next ``connect``.

        Args:
            policy: Which channels to protect.
            verify: Verify the server certificate and host name.
            implicit: TLS from the first byte instead of AUTH TLS.
            **options: Any other ``SSL`` field (cert, key, bundle, ciphers, context).
        """
        try:
            self.ssl = SSL(policy, verify, implicit, **options)
        except (TypeError, ValueError) as error:
            return self.reject(error)
        return self.succeed()

    def set_timeout(self, operation: float, connect: Optional[float] = None) -> Result:
        """Change the time limits. Values that are not positive are ignored."""
        if operation is not None and operation > 0:
            self.timeout.operation = operation
        if connect is not None and connect > 0:
            self.timeout.connect = connect
        if self.session is not None:
            self.session.timeout = self.timeout
        return self.succeed()

    def set_verbose(self, verbose: bool) -> Result:
        """Log every command and reply line at DEBUG level."""
        self.verbose = bool(verbose)
        logging.getLogger("ftplink").setLevel(
            logging.DEBUG if self.verbose else logging.NOTSET
        )
        if self.session is not None:
            self.session.control.verbose = self.verbose
        return self.succeed()

    def set_progress_callback(
        self,
        callback: Optional[ProgressCallback],
        data: Any = None,
    ) -> Result:
        """Observer for transfers: ``callback(data, direction, now, total)``.

        A truthy return value cancels the running transfer. Pass None to
        remove the observer.
        """
        if callback is not None and not callable(callback):
            return self.reject(InvalidParamError("Progress callback must be callable"))
        self.callback = callback
        self.data = data
        return self.succeed()

    def set_limits(self, limits: Limits) -> Result:
        """Transfer tuning used at the next ``connect``."""
        if not isinstance(limits, Limits):
            return self.reject(InvalidParamError("Limits must be a Limits instance"))
        self.limits = limits
        return self.succeed()

    async def connect(self) -> Result:
        """Connect, secure, log in and prepare the session.

        An existing connection is closed first.

        Returns:
            Result: OK once the session is ready for operations.
        """
        if self.endpoint is None:
            return await self.fail(InvalidParamError("Host not set"))

        if self.session is not None:
            await self.session.close()

        session = Session(
            self.endpoint,
            self.auth,
            self.ssl,
            self.mode,
            self.timeout,
            self.limits,
            self.verbose,
            self.encoding,
        )
        self.session = session

        try:
            await run(session, session.open(), self.timeout.limit)
        except MemoryError:
            session.drop()
            return await self.fail(OutOfMemoryError("Out of memory while connecting"))
        except FtpError as error:
            session.drop()
            return await self.fail(error)

        logger.info("Connected to %s:%d", self.endpoint.host, self.endpoint.port)
        await self.hook("connect", self)
        return self.succeed(session.greeting.text)

    async def upload(
        self,
        source: Source,
        remote: str,
        size: Optional[int] = None,
    ) -> Result:
        """Upload a local file or a readable binary stream.

        Args:
            source: Local file path, or any object with ``read(n)``.
            remote: Remote file path.
            size: Expected byte count for progress reports. Taken from the
                  file when ``source`` is a path.

        Returns:
            Result: Bytes sent as the value on success.
        """
        await self.hook("upload", source, remote)

        async def operation(executor: Executor) -> int:
            if not isinstance(source, (str, Path)):
                return await executor.upload(source, remote, size)
            try:
                stream = open(source, "rb")
                expected = os.fstat(stream.fileno()).st_size
            except OSError as error:
                raise LocalIOError(f"Cannot open {source}: {error}")
            with stream:
                return await executor.upload(stream, remote, expected)

        return await self.invoke(operation)

    async def download(self, remote: str, target: Target) -> Result:
        """Download a remote file into a local path or a writable binary stream.

        With a path the file is created or truncated, and deleted again if
        the download fails for any reason. A stream target is never touched
        after a failure; the caller decides what to do with partial data.

        Returns:
            Result: Bytes received as the value on success; status
            ``NOT_FOUND`` when the remote file does not exist.
        """
        await self.hook("download", remote, target)

        async def operation(executor: Executor) -> int:
            if not isinstance(target, (str, Path)):
                return await executor.download(remote, target)
            try:
                sink = open(target, "wb")
            except OSError as error:
                raise LocalIOError(f"Cannot open {target}: {error}")
            try:
                with sink:
                    count = await executor.download(remote, sink)
            except OSError as error:
                Executor.remove_partial(target)
                raise LocalIOError(f"Cannot write {target}: {error}")
            except BaseException:
                Executor.remove_partial(target)
                raise
            return count

        return await self.invoke(operation)

    async def list(self, path: str = "/") -> Result:
        """Raw directory listing as bytes, in whatever format the server uses."""
        return await self.invoke(lambda executor: executor.list(path))

    async def mkdir(self, path: str) -> Result:
        return await self.invoke(lambda executor: executor.mkdir(path))

    async def rmdir(self, path: str) -> Result:
        return await self.invoke(lambda executor: executor.rmdir(path))

    async def delete(self, path: str) -> Result:
        return await self.invoke(lambda executor: executor.delete(path))

    async def rename(self, old: str, new: str) -> Result:
        """Rename or move a remote file; either half failing keeps the old name."""
        return await self.invoke(lambda executor: executor.rename(old, new))

    async def size(self, path: str) -> Result:
        """Remote file size in bytes as the value."""
        return await self.invoke(lambda executor: executor.size(path))

    async def command(self, line: str) -> Result:
        """Send a raw command line; the reply text is the value.

        Only allowed on a connected, idle session. Commands that need a
        data connection or would change the session state are refused.
        """
        return await self.invoke(lambda executor: executor.command(line))

    async def destroy(self) -> None:
        """Close the session and forget the observer. Safe to call repeatedly."""
        session, self.session = self.session, None
        if session is not None:
            try:
                await session.close()
            except FtpError as error:
                warnings.warn(f"Error while closing FTP session: {error}")
                session.drop()
        self.callback = None
        self.data = None

    async def invoke(self, operation: Callable[[Executor], Awaitable[Any]]) -> Result:
        """Run one executor operation and fold the outcome into a ``Result``."""
        try:
            if self.session is None:
                raise ConnectionLostError("Not connected")
            value = await operation(Executor(self.session, self.callback, self.data))
        except MemoryError:
            return await self.fail(OutOfMemoryError("Out of memory"))
        except FtpError as error:
            return await self.fail(error)
        except Exception as error:
            unexpected = FtpError(f"Unexpected {error.__class__.__name__}: {error}")
            unexpected.__cause__ = error
            return await self.fail(unexpected)
        return self.succeed(value)

    def succeed(self, value: Any = None) -> Result:
        self.last = ""
        return Result.ok(value)

    def reject(self, error: Exception) -> Result:
        """Record a configuration error without running hooks."""
        if not isinstance(error, FtpError):
            error = InvalidParamError(str(error))
        self.last = str(error)
        logger.debug("Invalid configuration: %s", error)
        return Result.failed(error)

    async def fail(self, error: FtpError) -> Result:
        self.last = str(error)
        logger.info("%s: %s", error.__class__.__name__, error)
        await self.hook("error", error)
        return Result.failed(error)

    async def hook(self, name: str, *args: Any) -> None:
        callback = self.hooks.get(name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as error:
            warnings.warn(f"{name.capitalize()} hook failed: {error}")
