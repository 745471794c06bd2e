import asyncio
import contextlib
import logging
from ssl import SSLContext
from enum import Enum
from typing import AsyncIterator, Optional, Tuple, Union

from .auth import Basic, Guest
from .codec import Reply
from .config import Endpoint, Limits, Mode, Timeout
from .control import SETTLE, ControlChannel
from .data import DataChannel, DataConnection, DataNegotiator, Direction, parse_150_size
from .errors import (
    AuthError,
    ConnectionFailedError,
    ConnectionLostError,
    FtpError,
    ProtocolError,
    SessionBusyError,
    TimeoutExpiredError,
    TransferError,
)
from .settings import SSL, Security
from .tls import create_context

logger = logging.getLogger(__name__)


class State(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SECURED = "secured"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    TRANSFERRING = "transferring"


class Session:
    """
    The FTP session state machine.

    Drives one control connection from the greeting to the ready state and
    brackets every transfer, so that ``150 → payload → 226`` is handled as
    one unit::

        DISCONNECTED -connect-> CONNECTED -secure-> SECURED
        CONNECTED/SECURED -login-> AUTHENTICATED -prepare-> READY
        READY -begin_transfer-> TRANSFERRING -finish/abort_transfer-> READY
        any -close/protocol error-> DISCONNECTED

    At most one data connection exists at a time and it is always closed
    before the final reply of its command is read. Errors flagged fatal
    (connection, timeout, protocol) drop both sockets; a new ``connect`` is
    needed afterwards.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        auth: Optional[Basic] = None,
        ssl: Optional[SSL] = None,
        mode: Mode = Mode.PASSIVE,
        timeout: Optional[Timeout] = None,
        limits: Optional[Limits] = None,
        verbose: bool = False,
        encoding: str = "utf-8",
    ) -> None:
        self.endpoint = endpoint
        self.auth = auth or Guest()
        self.ssl = ssl or SSL()
        self.timeout = timeout or Timeout()
        self.limits = limits or Limits()
        self.control = ControlChannel(encoding, verbose)
        self.negotiator = DataNegotiator(self.control, mode, self.limits)
        self.state = State.DISCONNECTED
        self.context: Optional[SSLContext] = None
        self.protect = False
        self.greeting: Optional[Reply] = None
        self.channel: Optional[DataChannel] = None
        self.connection: Optional[DataConnection] = None

    def transition(self, state: State) -> None:
        if state is not self.state:
            logger.debug("Session %s -> %s", self.state.value, state.value)
            self.state = state

    def require(self, *states: State) -> None:
        """Check the session is in one of ``states``.

        Raises:
            ConnectionLostError: If the session is disconnected or the control
                                 channel broke underneath it.
            SessionBusyError: If a transfer holds the session.
            ProtocolError: For any other state mismatch.
        """
        if self.state is not State.DISCONNECTED and not self.control.connected:
            self.drop()
        if self.state in states:
            return
        if self.state is State.DISCONNECTED:
            raise ConnectionLostError("Not connected")
        if self.state is State.TRANSFERRING:
            raise SessionBusyError("A transfer is in progress on this session")
        raise ProtocolError(f"Operation not allowed while {self.state.value}")

    @contextlib.asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """Drop the connection when a fatal error escapes the block."""
        try:
            yield
        except FtpError as error:
            if error.fatal:
                logger.info("Dropping session after %s", error.__class__.__name__)
                self.drop()
            raise
        except asyncio.CancelledError:
            # wait_for expired around us; the dialogue is in an unknown place
            self.drop()
            raise

    async def open(self) -> None:
        """Run the whole lifecycle from DISCONNECTED to READY."""
        async with self.guard():
            await self.connect()
            if self.ssl.enabled and not self.ssl.implicit:
                await self.secure()
            await self.login()
            await self.prepare()

    async def connect(self) -> Reply:
        """Open the control connection and read the ``220`` greeting."""
        self.require(State.DISCONNECTED)

        context = None
        if self.ssl.implicit:
            self.context = context = create_context(self.ssl)

        self.greeting = await self.control.open(
            self.endpoint, self.timeout.connect, context
        )
        self.transition(State.SECURED if context else State.CONNECTED)
        return self.greeting

    async def secure(self) -> bool:
        """Upgrade the control connection with AUTH TLS.

        Returns:
            bool: True if the connection is now protected, False when the
            server refused and the policy allows carrying on in clear text.

        Raises:
            ConnectionFailedError: If the server refuses under a policy that
                                   requires TLS, or the handshake fails.
        """
        self.require(State.CONNECTED)
        if not self.ssl.enabled:
            return False

        reply = await self.control.command("AUTH", "TLS")
        if reply.code != 234:
            if not self.ssl.policy.required:
                logger.info("AUTH TLS refused (%d), continuing in clear text", reply.code)
                return False
            raise ConnectionFailedError("Server refused AUTH TLS", reply)

        self.context = create_context(self.ssl)
        await self.control.upgrade_tls(self.context, self.timeout.connect)
        self.transition(State.SECURED)
        return True

    async def login(self) -> Reply:
        """USER, then PASS when the server asks for it."""
        self.require(State.CONNECTED, State.SECURED)

        reply = await self.control.command("USER", self.auth.user)
        if reply.code == 331:
            reply = await self.control.command("PASS", self.auth.password)

        if not reply.matches("230", "202"):
            raise AuthError("Login denied", reply)

        self.transition(State.AUTHENTICATED)
        return reply

    async def prepare(self) -> None:
        """Negotiate data protection and switch to binary mode."""
        self.require(State.AUTHENTICATED)
        policy = self.ssl.policy

        if self.control.secured:
            reply = await self.control.command("PBSZ", "0")
            if not reply.success and policy is Security.ALL:
                raise ConnectionFailedError("Server refused PBSZ 0", reply)

            if policy is Security.CONTROL:
                await self.control.command("PROT", "C")
                self.protect = False
            else:
                reply = await self.control.command("PROT", "P")
                self.protect = reply.success
                if not self.protect:
                    if policy is Security.ALL:
                        raise ConnectionFailedError("Server refused PROT P", reply)
                    logger.info("PROT P refused, data connections stay in clear text")

        reply = await self.control.command("TYPE", "I")
        if not reply.success:
            raise ProtocolError("Server refused binary mode", reply)

        self.transition(State.READY)

    async def command(self, verb: str, argument: Union[str, bytes, None] = None) -> Reply:
        """Issue a control-only command from the ready state."""
        self.require(State.READY)
        return await self.control.command(verb, argument)

    async def begin_transfer(
        self,
        verb: str,
        argument: Optional[str],
        direction: Direction,
    ) -> Tuple[DataConnection, Optional[int]]:
        """Negotiate a data connection and start a transfer command.

        Args:
            verb: Transfer command (LIST, RETR, STOR, ...).
            argument: Its argument.
            direction: Which way the payload flows.

        Returns:
            ``(connection, size)`` where size is the byte count announced in
            the 150 reply, if any.

        Raises:
            TransferError: If the server refuses the command; the refusing
                           reply is attached so callers can tell 550 apart.
        """
        self.require(State.READY)
        self.transition(State.TRANSFERRING)

        try:
            self.channel = await self.negotiator.negotiate(self.timeout.connect)
            reply = await self.control.command(verb, argument, preliminary=True)

            # Some servers send a 2xx before the 1xx; skip it
            if reply.success:
                reply = await self.control.read_reply()

            if not reply.preliminary:
                raise TransferError(f"Server refused {verb}", reply)

            self.connection = await self.channel.connect(self.timeout.connect)
            if self.protect:
                await self.connection.secure(self.control, self.context)
        except asyncio.CancelledError:
            self.drop()
            raise
        except Exception:
            await self.abort_transfer()
            raise

        logger.debug("%s %s started (%s)", verb, argument or "", direction.value)
        return self.connection, parse_150_size(reply.text)

    async def finish(self) -> Reply:
        """Close the data connection, then read the completion reply.

        Raises:
            TransferError: If the final reply is not ``2xx``.
        """
        self.require(State.TRANSFERRING)
        try:
            await self.connection.close()
            reply = await self.control.read_reply()
            while reply.preliminary:
                reply = await self.control.read_reply()
        finally:
            self.release()

        if not reply.success:
            raise TransferError("Transfer failed", reply)
        return reply

    async def abort_transfer(self) -> Optional[Reply]:
        """Force the data connection shut and settle the control dialogue.

        The server's answer to a torn-down data connection (typically 426)
        is read within a short grace period; if it never comes the whole
        session is dropped.

        Returns:
            The reply that closed the transfer, or None if there was none.
        """
        self.release()
        if not self.control.pending:
            if self.state is State.TRANSFERRING:
                self.transition(State.READY)
            return None

        async def settle() -> Reply:
            reply = await self.control.read_reply()
            while reply.preliminary:
                reply = await self.control.read_reply()
            return reply

        try:
            reply = await asyncio.wait_for(settle(), SETTLE)
        except (FtpError, asyncio.TimeoutError) as error:
            logger.info("Control channel did not recover from abort: %s", error)
            self.drop()
            return None

        if self.state is State.TRANSFERRING:
            self.transition(State.READY)
        return reply

    def release(self) -> None:
        """Release the data channel; the session returns to READY."""
        if self.channel is not None:
            self.channel.close()
        self.channel = None
        self.connection = None
        if self.state is State.TRANSFERRING and not self.control.pending:
            self.transition(State.READY)

    async def close(self) -> None:
        """QUIT and close. Safe to call in any state."""
        if self.state is State.TRANSFERRING:
            await self.abort_transfer()
        await self.control.close()
        self.reset()

    def drop(self) -> None:
        """Tear everything down without any dialogue."""
        if self.channel is not None:
            self.channel.close()
        self.control.abort()
        self.reset()

    def reset(self) -> None:
        self.channel = None
        self.connection = None
        self.protect = False
        self.transition(State.DISCONNECTED)

    @property
    def ready(self) -> bool:
        return self.state is State.READY and self.control.connected


async def run(session: Session, coro, limit: Optional[float]):
    """Await ``coro`` within the operation budget.

    Raises:
        TimeoutExpiredError: If the budget runs out; the session is dropped.
    """
    try:
        return await asyncio.wait_for(coro, limit)
    except FtpError:
        # TimeoutExpiredError is a TimeoutError too; keep the inner one
        raise
    except asyncio.TimeoutError:
        session.drop()
        raise TimeoutExpiredError(f"Operation exceeded {limit} seconds")
