import asyncio
import inspect
import logging
import os
import warnings
from pathlib import Path
from typing import Any, Awaitable, Optional, Union

from .codec import Reply, split_command
from .data import DataConnection, Direction
from .errors import (
    InvalidParamError,
    LocalIOError,
    NotFoundError,
    OutOfMemoryError,
    ProtocolError,
    TransferCancelled,
    TransferError,
)
from .paths import build_url, normalize_path
from .session import Session, State, run
from .transfer import Progress, ProgressCallback

logger = logging.getLogger(__name__)

# Verbs the raw command path refuses: they either need a data connection or
# change the session state behind the state machine's back
DATA_VERBS = {"LIST", "NLST", "MLSD", "RETR", "STOR", "STOU", "APPE"}
STATE_VERBS = {"QUIT", "REIN", "AUTH", "CCC", "PBSZ", "PROT", "USER", "PASS", "ACCT"}


class Executor:
    """
    User-facing FTP operations on top of a ready ``Session``.

    Every operation runs within the session's operation timeout, settles
    its final reply before returning and raises a typed ``FtpError`` on
    failure. Fatal errors leave the session disconnected; everything else
    leaves it ready for the next call.

    Sources and sinks are plain binary streams: anything with ``read(n)``
    or ``write(data)``, sync or async. The executor never closes or deletes
    them; a failed download raises with the sink in whatever state the
    transfer left it, and ``remove_partial`` is there for callers that
    downloaded into a file.
    """

    def __init__(
        self,
        session: Session,
        callback: Optional[ProgressCallback] = None,
        data: Any = None,
    ) -> None:
        self.session = session
        self.callback = callback
        self.data = data

    async def execute(self, operation: Awaitable) -> Any:
        async with self.session.guard():
            return await run(self.session, operation, self.session.timeout.limit)

    def progress(self, direction: Direction, total: Optional[int] = None) -> Progress:
        return Progress(
            direction,
            self.callback,
            self.data,
            total,
            self.session.limits.interval,
        )

    def target(self, path: Optional[str]) -> str:
        # Validates the path and the URL length before anything hits the wire
        path = normalize_path(path)
        build_url(self.session.endpoint, path)
        return path

    async def list(self, path: Optional[str] = "/") -> bytes:
        """Directory listing, returned exactly as the server sent it.

        Args:
            path: Remote directory; the root when omitted.

        Returns:
            bytes: Raw LIST output. The format is server defined.
        """
        path = self.target(path)
        return await self.execute(self._list(path))

    async def _list(self, path: str) -> bytes:
        buffer = bytearray()
        connection, _ = await self.session.begin_transfer("LIST", path, Direction.GET)
        progress = self.progress(Direction.GET)

        async def sink(block: bytes) -> None:
            try:
                buffer.extend(block)
            except MemoryError:
                raise OutOfMemoryError("Directory listing does not fit in memory")

        await self._receive(connection, sink, progress)
        await self.session.finish()
        return bytes(buffer)

    async def upload(
        self,
        source: Any,
        remote: str,
        size: Optional[int] = None,
    ) -> int:
        """Store a byte stream as a remote file (STOR).

        Args:
            source: Readable binary stream, read until it returns ``b""``.
            remote: Remote file path.
            size: Expected byte count for progress reports, if known.

        Returns:
            int: Number of bytes sent.

        Raises:
            LocalIOError: If reading the source fails.
            TransferCancelled: If the progress callback asked to stop.
            TransferError: If the server refuses the upload or the data
                           connection fails.
        """
        if source is None or not hasattr(source, "read"):
            raise InvalidParamError("Upload source must be a readable stream")
        if size is not None and size < 0:
            raise InvalidParamError("Expected size cannot be negative")
        remote = self.target(remote)
        return await self.execute(self._upload(source, remote, size))

    async def _upload(self, source: Any, remote: str, size: Optional[int]) -> int:
        block = self.session.limits.block
        connection, _ = await self.session.begin_transfer("STOR", remote, Direction.PUT)
        progress = self.progress(Direction.PUT, size)

        try:
            while True:
                chunk = await self._read(source, block)
                if not chunk:
                    break
                await connection.write(chunk)
                if not await progress.update(len(chunk)):
                    raise TransferCancelled("Upload cancelled by progress callback")
            if not await progress.done():
                raise TransferCancelled("Upload cancelled by progress callback")
        except asyncio.CancelledError:
            raise
        except Exception:
            await self.session.abort_transfer()
            raise

        await self.session.finish()
        logger.debug("Uploaded %d bytes to %s", progress.count, remote)
        return progress.count

    async def download(self, remote: str, sink: Any) -> int:
        """Copy a remote file into a byte sink (RETR).

        When a progress callback is set the size is probed with SIZE first
        so reports carry a total; a 150 reply announcing the size works too.

        Args:
            remote: Remote file path.
            sink: Writable binary stream.

        Returns:
            int: Number of bytes received.

        Raises:
            NotFoundError: If the server answers 550.
            LocalIOError: If writing the sink fails.
            TransferCancelled: If the progress callback asked to stop.
            TransferError: For any other refusal or data connection failure.
        """
        if sink is None or not hasattr(sink, "write"):
            raise InvalidParamError("Download sink must be a writable stream")
        remote = self.target(remote)
        return await self.execute(self._download(remote, sink))

    async def _download(self, remote: str, sink: Any) -> int:
        total = None
        if self.callback is not None:
            total = await self._probe(remote)

        try:
            connection, announced = await self.session.begin_transfer(
                "RETR", remote, Direction.GET
            )
        except TransferError as error:
            if error.reply is not None and error.reply.matches("550"):
                raise NotFoundError(f"Remote file not found: {remote}", error.reply)
            raise

        progress = self.progress(Direction.GET, total if total is not None else announced)

        async def write(block: bytes) -> None:
            try:
                result = sink.write(block)
                if inspect.isawaitable(result):
                    await result
            except (OSError, ValueError) as error:
                raise LocalIOError(f"Cannot write downloaded data: {error}")

        await self._receive(connection, write, progress)
        await self.session.finish()
        logger.debug("Downloaded %d bytes from %s", progress.count, remote)
        return progress.count

    async def _receive(self, connection: DataConnection, write, progress: Progress) -> None:
        try:
            while True:
                chunk = await connection.read()
                if not chunk:
                    break
                await write(chunk)
                if not await progress.update(len(chunk)):
                    raise TransferCancelled("Download cancelled by progress callback")
            if not await progress.done():
                raise TransferCancelled("Download cancelled by progress callback")
        except asyncio.CancelledError:
            raise
        except Exception:
            await self.session.abort_transfer()
            raise

    async def _probe(self, remote: str) -> Optional[int]:
        reply = await self.session.command("SIZE", remote)
        if reply.code != 213:
            return None
        try:
            return parse_size(reply)
        except ProtocolError:
            return None

    async def _read(self, source: Any, count: int) -> bytes:
        try:
            chunk = source.read(count)
            if inspect.isawaitable(chunk):
                chunk = await chunk
        except (OSError, ValueError) as error:
            raise LocalIOError(f"Cannot read upload source: {error}")
        if isinstance(chunk, str):
            raise LocalIOError("Upload source must be opened in binary mode")
        return chunk

    async def mkdir(self, path: str) -> Reply:
        """Create a remote directory (MKD)."""
        path = self.target(path)
        return await self.execute(self._simple("MKD", path, "Create directory failed"))

    async def rmdir(self, path: str) -> Reply:
        """Remove an empty remote directory (RMD)."""
        path = self.target(path)
        return await self.execute(self._simple("RMD", path, "Remove directory failed"))

    async def delete(self, path: str) -> Reply:
        """Delete a remote file (DELE)."""
        path = self.target(path)
        return await self.execute(self._simple("DELE", path, "Delete file failed"))

    async def _simple(self, verb: str, path: str, failure: str) -> Reply:
        reply = await self.session.command(verb, path)
        if not reply.success:
            raise TransferError(failure, reply)
        return reply

    async def rename(self, old: str, new: str) -> Reply:
        """Rename a remote path with the RNFR/RNTO pair.

        Raises:
            TransferError: If either half is refused; the file keeps its
                           old name in that case.
        """
        old, new = self.target(old), self.target(new)
        return await self.execute(self._rename(old, new))

    async def _rename(self, old: str, new: str) -> Reply:
        reply = await self.session.command("RNFR", old)
        if not reply.matches("350"):
            raise TransferError("Rename failed", reply)
        reply = await self.session.command("RNTO", new)
        if not reply.success:
            raise TransferError("Rename failed", reply)
        return reply

    async def size(self, path: str) -> int:
        """Size of a remote file in bytes (SIZE).

        Raises:
            NotFoundError: If the server answers 550.
            TransferError: For any other refusal.
            ProtocolError: If the 213 reply carries no number.
        """
        path = self.target(path)
        return await self.execute(self._size(path))

    async def _size(self, path: str) -> int:
        reply = await self.session.command("SIZE", path)
        if reply.code == 213:
            return parse_size(reply)
        if reply.code == 550:
            raise NotFoundError(f"Remote file not found: {path}", reply)
        raise TransferError("Get file size failed", reply)

    async def command(self, line: str) -> str:
        """Send one raw command line and return the reply text.

        Commands that would need a data connection or that change the
        session state (QUIT, AUTH, PROT, ...) are refused.

        Raises:
            InvalidParamError: For empty lines, embedded line breaks or
                               refused verbs.
            TransferError: If the server answers 4xx or 5xx.
        """
        if not isinstance(line, str) or not line.strip():
            raise InvalidParamError("Command cannot be empty")
        if "\r" in line or "\n" in line:
            raise InvalidParamError("Command cannot contain CR or LF")

        verb, argument = split_command(line)
        verb = verb.upper()
        if verb in DATA_VERBS:
            raise InvalidParamError(f"{verb} needs a data connection, use the transfer operations")
        if verb in STATE_VERBS:
            raise InvalidParamError(f"{verb} would bypass the session state machine")

        return await self.execute(self._command(verb, argument))

    async def _command(self, verb: str, argument: Optional[str]) -> str:
        reply = await self.session.command(verb, argument)
        if reply.transient or reply.permanent:
            raise TransferError("Command execution failed", reply)
        return reply.text

    @staticmethod
    def remove_partial(path: Union[str, Path]) -> bool:
        """Delete a partially downloaded local file.

        Returns:
            bool: True if a file was removed.
        """
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as error:
            warnings.warn(f"Could not remove partial download {path}: {error}")
            return False
        return True

    @property
    def ready(self) -> bool:
        return self.session.state is State.READY


def parse_size(reply: Reply) -> int:
    """Parse the byte count out of a ``213`` reply.

    Raises:
        ProtocolError: If the reply does not start with a non-negative integer.
    """
    token = reply.text.strip().split(" ", 1)[0]
    if not token.isdigit():
        raise ProtocolError("Malformed SIZE reply", reply)
    return int(token)


__all__ = ["Executor", "parse_size"]
