import asyncio
import logging
import socket
import ssl
from typing import Optional, Tuple, Union

from aioftp.common import StreamIO

from .codec import Reply, ReplyParser, encode_command
from .config import Endpoint
from .errors import (
    ConnectionFailedError,
    ConnectionLostError,
    FtpError,
    ProtocolError,
    SessionBusyError,
    TimeoutExpiredError,
)
from .tls import start_tls

logger = logging.getLogger(__name__)

# Bytes requested per read on the control connection
CHUNK = 4096

# Seconds granted to QUIT and to the TLS close during shutdown
GRACE = 2.0

# Seconds allowed for the final reply after a transfer is torn down
SETTLE = 0.5


class ControlChannel:
    """
    The command/reply connection of one session.

    Only one command may be outstanding at a time. ``command`` sends a line
    and waits for its final reply, skipping ``1xx`` preliminaries unless the
    caller asks for them. A caller that takes the preliminary (the transfer
    path does) owes the channel a ``read_reply`` for the final reply before
    any further command is accepted.

    Any read or write failure, timeout or framing error breaks the channel;
    from then on every call raises ``ConnectionLostError``.
    """

    def __init__(self, encoding: str = "utf-8", verbose: bool = False) -> None:
        self.encoding = encoding
        self.verbose = verbose
        self.parser = ReplyParser(encoding)
        self.stream: Optional[StreamIO] = None
        self.host: Optional[str] = None
        self.secured = False
        self.pending = False
        self.broken = False

    @property
    def connected(self) -> bool:
        return self.stream is not None and not self.broken

    @property
    def writer(self) -> asyncio.StreamWriter:
        if not self.connected:
            raise ConnectionLostError("Not connected")
        return self.stream.writer

    @property
    def peer(self) -> Tuple:
        """Resolved address of the server end of the control connection."""
        return self.writer.get_extra_info("peername")

    @property
    def local(self) -> Tuple:
        """Local address of the control connection."""
        return self.writer.get_extra_info("sockname")

    @property
    def family(self) -> int:
        sock = self.writer.get_extra_info("socket")
        if sock is not None:
            return sock.family
        return socket.AF_INET6 if ":" in self.peer[0] else socket.AF_INET

    async def open(
        self,
        endpoint: Endpoint,
        timeout: Optional[float] = None,
        context: Optional[ssl.SSLContext] = None,
    ) -> Reply:
        """Connect and read the server greeting.

        Args:
            endpoint: Server host and port.
            timeout: Seconds allowed for TCP, implicit TLS and the greeting.
            context: When given, TLS starts on the first byte (implicit FTPS).

        Returns:
            Reply: The ``2xx`` greeting.

        Raises:
            TimeoutExpiredError: If any step exceeds ``timeout``.
            ConnectionFailedError: If the connection or greeting fails.
        """
        if self.stream is not None:
            raise ProtocolError("Control channel is already open")

        self.host = endpoint.host
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    endpoint.host,
                    endpoint.port,
                    ssl=context,
                    server_hostname=endpoint.host if context else None,
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutExpiredError(
                f"Connection to {endpoint.host}:{endpoint.port} timed out"
            )
        except (OSError, ssl.SSLError) as error:
            raise ConnectionFailedError(
                f"Failed to connect to {endpoint.host}:{endpoint.port}: {error}"
            )

        self.stream = StreamIO(reader, writer)
        self.secured = context is not None
        self.broken = False

        try:
            greeting = await asyncio.wait_for(self.read_reply(), timeout)
            # 120 means "ready in n minutes", the real greeting follows
            while greeting.code == 120:
                greeting = await asyncio.wait_for(self.read_reply(), timeout)
        except asyncio.TimeoutError:
            self.abort()
            raise TimeoutExpiredError(f"No greeting from {endpoint.host} in time")
        except FtpError as error:
            self.abort()
            raise ConnectionFailedError(f"Greeting failed: {error.message}", error.reply)

        if not greeting.success:
            self.abort()
            raise ConnectionFailedError("Server refused the connection", greeting)

        return greeting

    async def send(self, verb: str, argument: Union[str, bytes, None] = None) -> None:
        """Write one command line.

        Raises:
            ConnectionLostError: If the channel is unusable or the write fails.
            SessionBusyError: If a reply is still outstanding.
        """
        if not self.connected:
            raise ConnectionLostError("Not connected")
        if self.pending:
            raise SessionBusyError(f"Cannot send {verb.upper()} while a reply is outstanding")

        line = encode_command(verb, argument, self.encoding)
        if self.verbose:
            logger.debug("> %s", self.sanitize(line))

        self.pending = True
        try:
            await self.stream.write(line)
        except (OSError, ssl.SSLError) as error:
            self.abort()
            raise ConnectionLostError(f"Failed to send {verb.upper()}: {error}")

    async def read_reply(self) -> Reply:
        """Read the next reply, preliminary or final.

        Raises:
            ConnectionLostError: On EOF, I/O errors or a 421 reply.
            ProtocolError: On a framing error.
        """
        if not self.connected:
            raise ConnectionLostError("Not connected")

        while True:
            try:
                reply = self.parser.next_reply()
            except ProtocolError:
                self.abort()
                raise
            if reply is not None:
                break

            try:
                data = await self.stream.read(CHUNK)
            except (OSError, ssl.SSLError) as error:
                self.abort()
                raise ConnectionLostError(f"Control connection failed: {error}")
            if not data:
                self.abort()
                raise ConnectionLostError("Control connection closed by server")
            self.parser.feed(data)

        if self.verbose:
            for line in reply.lines:
                logger.debug("< %d %s", reply.code, line)

        # A preliminary reply means the final one is still owed
        self.pending = reply.preliminary

        if reply.code == 421:
            self.abort()
            raise ConnectionLostError("Server is closing the control connection", reply)

        return reply

    async def command(
        self,
        verb: str,
        argument: Union[str, bytes, None] = None,
        preliminary: bool = False,
    ) -> Reply:
        """Send a command and collect its reply.

        Args:
            verb: Command verb.
            argument: Optional argument.
            preliminary: Return a ``1xx`` reply instead of skipping it. The
                         final reply must then be read with ``read_reply``.

        Returns:
            Reply: The final reply, or the preliminary one if requested.
        """
        await self.send(verb, argument)
        reply = await self.read_reply()
        while reply.preliminary and not preliminary:
            reply = await self.read_reply()
        return reply

    async def upgrade_tls(
        self,
        context: ssl.SSLContext,
        timeout: Optional[float] = None,
    ) -> None:
        """Wrap the connection in TLS after a ``234`` reply to AUTH TLS.

        The configured host name, not the resolved address, goes to the
        certificate check.

        Raises:
            ConnectionFailedError: If the handshake fails.
        """
        if self.parser.pending:
            # Anything buffered past the 234 would be plaintext injected
            # ahead of the handshake
            self.abort()
            raise ProtocolError("Unexpected data after AUTH TLS reply")
        try:
            await start_tls(self.writer, context, self.host, timeout)
        except FtpError:
            self.abort()
            raise
        self.secured = True

    async def close(self) -> None:
        """Send QUIT, read the reply and close the socket. Idempotent."""
        if self.stream is None:
            return

        if self.connected and not self.pending:
            try:
                await asyncio.wait_for(self.command("QUIT"), GRACE)
            except (FtpError, asyncio.TimeoutError) as error:
                logger.debug("QUIT failed: %s", error)

        stream, self.stream = self.stream, None
        stream.close()
        try:
            await asyncio.wait_for(stream.writer.wait_closed(), GRACE)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as error:
            logger.debug("Error while closing control connection: %s", error)
        self._reset()

    def abort(self) -> None:
        """Drop the socket without any dialogue."""
        self.broken = True
        if self.stream is not None:
            transport = self.stream.writer.transport
            transport.abort()
            self.stream = None
        self._reset()

    def _reset(self) -> None:
        self.parser.clear()
        self.pending = False
        self.secured = False

    def sanitize(self, line: bytes) -> str:
        text = line.decode(self.encoding, errors="replace").rstrip("\r\n")
        if text[:5].upper() == "PASS ":
            return text[:5] + "*" * (len(text) - 5)
        return text
