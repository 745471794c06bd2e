"""
Data connection negotiation (RFC 959 PASV/PORT, RFC 2428 EPSV/EPRT).

A ``DataChannel`` is created before the transfer command is sent: in
passive mode it has already dialled the server, in active mode it is
listening and the server has been told where. Once the transfer command
got its ``1xx`` preliminary, ``DataChannel.connect`` hands back the
``DataConnection`` the payload flows through, TLS-wrapped when the session
negotiated ``PROT P``.
"""

import asyncio
import ipaddress
import logging
import re
import socket
import ssl
from enum import Enum
from typing import Optional, Tuple

from aioftp.common import StreamThrottle, ThrottleStreamIO

from .config import Limits, Mode
from .control import GRACE, ControlChannel
from .errors import FtpError, ProtocolError, TimeoutExpiredError, TransferError
from .tls import data_context, start_tls

logger = logging.getLogger(__name__)

EPSV = re.compile(r"\(([!-/:-~])\1\1(\d+)\1\)")
PASV = re.compile(r"(\d+),(\d+),(\d+),(\d+),(\d+),(\d+)")
SIZE = re.compile(r"\((\d+) bytes?\)", re.IGNORECASE)


class Direction(Enum):
    """Which way payload bytes flow on the data connection."""

    GET = "download"
    PUT = "upload"


def parse_epsv(text: str) -> int:
    """Parse the port out of a ``229`` reply: ``(|||port|)``.

    The delimiter may be any printable non-digit, as long as all four are
    the same character.

    Raises:
        ProtocolError: If the text holds no well-formed port.
    """
    match = EPSV.search(text)
    if match is None:
        raise ProtocolError(f"Cannot parse EPSV reply: {text!r}")
    port = int(match.group(2))
    if not 1 <= port <= 65535:
        raise ProtocolError(f"EPSV port out of range: {port}")
    return port


def parse_pasv(text: str) -> Tuple[str, int]:
    """Parse ``h1,h2,h3,h4,p1,p2`` out of a ``227`` reply.

    Raises:
        ProtocolError: If the six numbers are missing or out of range.
    """
    match = PASV.search(text)
    if match is None:
        raise ProtocolError(f"Cannot parse PASV reply: {text!r}")
    numbers = [int(n) for n in match.groups()]
    if any(n > 255 for n in numbers):
        raise ProtocolError(f"Invalid PASV address: {match.group(0)}")
    host = ".".join(str(n) for n in numbers[:4])
    port = (numbers[4] << 8) | numbers[5]
    if port == 0:
        raise ProtocolError("PASV port cannot be zero")
    return host, port


def format_port(host: str, port: int) -> str:
    """Argument of a PORT command for an IPv4 address."""
    address = ipaddress.IPv4Address(host)
    return ",".join([*str(address).split("."), str(port >> 8), str(port & 0xFF)])


def format_eprt(host: str, port: int) -> str:
    """Argument of an EPRT command: ``|af|address|port|``."""
    address = ipaddress.ip_address(host.split("%", 1)[0])
    family = 1 if address.version == 4 else 2
    return f"|{family}|{address}|{port}|"


def parse_150_size(text: str) -> Optional[int]:
    """Transfer size some servers announce in the 150 reply, if present."""
    match = SIZE.search(text)
    return int(match.group(1)) if match else None


class DataConnection:
    """
    One established data connection.

    Half duplex from the client's side: downloads only read until EOF,
    uploads only write and then close their side.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        limits: Limits,
    ) -> None:
        self.limits = limits
        self.stream = ThrottleStreamIO(
            reader,
            writer,
            throttles={"_": StreamThrottle.from_limits(limits.read, limits.write)},
        )
        self.secured = False
        self.closed = False

    async def secure(self, control: ControlChannel, context: ssl.SSLContext) -> None:
        """Run the TLS handshake, resuming the control channel's session."""
        await start_tls(
            self.stream.writer,
            data_context(control.writer, context),
            control.host,
        )
        self.secured = True

    async def read(self) -> bytes:
        try:
            return await self.stream.read(self.limits.block)
        except (OSError, ssl.SSLError) as error:
            raise TransferError(f"Data connection read failed: {error}")

    async def write(self, data: bytes) -> None:
        try:
            await self.stream.write(data)
        except (OSError, ssl.SSLError) as error:
            raise TransferError(f"Data connection write failed: {error}")

    async def close(self) -> None:
        """Close gracefully, flushing what was written and the TLS shutdown."""
        if self.closed:
            return
        self.closed = True
        writer = self.stream.writer
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), GRACE)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as error:
            logger.debug("Error while closing data connection: %s", error)
            writer.transport.abort()

    def abort(self) -> None:
        """Force the socket shut without flushing."""
        if self.closed:
            return
        self.closed = True
        self.stream.writer.transport.abort()


class DataChannel:
    """
    A data connection being set up for one transfer command.

    Passive channels hold the already connected socket; active channels
    hold the listener and wait for exactly one inbound connection.
    """

    def __init__(self, limits: Limits) -> None:
        self.limits = limits
        self.server: Optional[asyncio.AbstractServer] = None
        self.inbound: Optional[asyncio.Future] = None
        self.connection: Optional[DataConnection] = None

    async def listen(self, host: str, family: int) -> int:
        loop = asyncio.get_running_loop()
        self.inbound = loop.create_future()
        self.server = await asyncio.start_server(
            self._accepted, host=host, port=0, family=family, backlog=1
        )
        return self.server.sockets[0].getsockname()[1]

    async def _accepted(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self.inbound is None or self.inbound.done():
            # Only one inbound connection per transfer
            writer.transport.abort()
            return
        self.inbound.set_result((reader, writer))

    async def dial(self, host: str, port: int, timeout: Optional[float]) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout
            )
        except asyncio.TimeoutError:
            raise TimeoutExpiredError(f"Data connection to {host}:{port} timed out")
        except OSError as error:
            raise TransferError(f"Can't open data connection to {host}:{port}: {error}")
        self.connection = DataConnection(reader, writer, self.limits)

    async def connect(self, timeout: Optional[float] = None) -> DataConnection:
        """Return the data connection, accepting it first in active mode.

        Raises:
            TimeoutExpiredError: If the server never dials back.
        """
        if self.connection is None:
            if self.inbound is None:
                raise ProtocolError("Data channel was never negotiated")
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.shield(self.inbound), timeout
                )
            except asyncio.TimeoutError:
                raise TimeoutExpiredError("Server did not open the data connection")
            finally:
                self._stop_listening()
            self.connection = DataConnection(reader, writer, self.limits)
        return self.connection

    def _stop_listening(self) -> None:
        if self.server is not None:
            self.server.close()
            self.server = None

    def close(self) -> None:
        """Release everything this channel holds. Safe to call repeatedly."""
        self._stop_listening()
        if self.inbound is not None and self.inbound.done() and not self.inbound.cancelled():
            if self.connection is None:
                _, writer = self.inbound.result()
                writer.transport.abort()
        elif self.inbound is not None:
            self.inbound.cancel()
        if self.connection is not None:
            self.connection.abort()


class DataNegotiator:
    """
    Sets up data channels over a control channel.

    Passive mode tries EPSV first and falls back to PASV on IPv4 when the
    server answers 5xx; the refusal is remembered for the rest of the
    session. Active mode listens on the control connection's local address
    and advertises it with EPRT (IPv6, or when preferred) or PORT.
    """

    def __init__(self, control: ControlChannel, mode: Mode, limits: Limits) -> None:
        self.control = control
        self.mode = mode
        self.limits = limits
        self.epsv = True

    async def negotiate(self, timeout: Optional[float] = None) -> DataChannel:
        """Prepare a data channel for the next transfer command.

        Args:
            timeout: Seconds allowed for dialling the server (passive mode).

        Returns:
            DataChannel: Connected (passive) or listening (active) channel.

        Raises:
            TransferError: If the server refuses every negotiation command or
                           the data connection cannot be opened.
        """
        channel = DataChannel(self.limits)
        try:
            if self.mode is Mode.PASSIVE:
                host, port = await self.passive()
                logger.debug("Passive data connection to %s:%d", host, port)
                await channel.dial(host, port, timeout)
            else:
                await self.active(channel)
        except (FtpError, asyncio.CancelledError):
            channel.close()
            raise
        return channel

    async def passive(self) -> Tuple[str, int]:
        peer = self.control.peer[0]
        ipv6 = self.control.family == socket.AF_INET6

        if self.epsv:
            reply = await self.control.command("EPSV")
            if reply.code == 229:
                return peer, parse_epsv(reply.text)
            if not reply.permanent or ipv6:
                raise TransferError("Server refused EPSV", reply)
            logger.info("EPSV refused, falling back to PASV")
            self.epsv = False

        if ipv6:
            raise TransferError("PASV is not available over IPv6")

        reply = await self.control.command("PASV")
        if reply.code != 227:
            raise TransferError("Server refused PASV", reply)
        host, port = parse_pasv(reply.text)
        if host == "0.0.0.0":
            host = peer
        return host, port

    async def active(self, channel: DataChannel) -> None:
        host = self.control.local[0]
        family = self.control.family
        port = await channel.listen(host, family)
        logger.debug("Listening for active data connection on %s:%d", host, port)

        if family == socket.AF_INET6 or self.limits.eprt:
            reply = await self.control.command("EPRT", format_eprt(host, port))
            if reply.success:
                return
            if not reply.permanent or family == socket.AF_INET6:
                raise TransferError("Server refused EPRT", reply)
            logger.info("EPRT refused, falling back to PORT")

        reply = await self.control.command("PORT", format_port(host, port))
        if not reply.success:
            raise TransferError("Server refused PORT", reply)
