from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Generic, Optional, TypeVar, TYPE_CHECKING

if TYPE_CHECKING:
    from .codec import Reply

T = TypeVar("T")


class Status(IntEnum):
    """
    Numeric result codes returned by the library surface.

    Zero means success, every failure is negative so callers coming from
    the C-style API can keep comparing against ``Status.OK``.
    """

    OK = 0
    INIT = -1
    CONNECTION = -2
    AUTH = -3
    TRANSFER = -4
    NOT_FOUND = -5
    MEMORY = -6
    INVALID_PARAM = -7
    PROTOCOL = -8
    FILE_IO = -9
    TIMEOUT = -10
    CANCELLED = -11


class FtpError(Exception):
    """
    Base class for everything the protocol engine raises.

    Each subclass pins a ``status`` so the library surface can turn an
    exception into a ``Result`` without a lookup table. ``fatal`` marks
    errors that leave the control connection unusable; the session drops
    its sockets when one of those escapes an operation.

    Attributes:
        message: Human readable description, becomes the client's last error.
        reply: The server reply that caused the failure, if there was one.
    """

    status: Status = Status.PROTOCOL
    fatal: bool = False

    def __init__(self, message: str, reply: Optional["Reply"] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reply = reply

    def __str__(self) -> str:
        if self.reply is not None:
            return f"{self.message} ({self.reply.code} {self.reply.text})"
        return self.message


class InitError(FtpError):
    status = Status.INIT


class InvalidParamError(FtpError, ValueError):
    status = Status.INVALID_PARAM


class ConnectionFailedError(FtpError, ConnectionError):
    """TCP connect or TLS handshake failed."""

    status = Status.CONNECTION
    fatal = True


class ConnectionLostError(ConnectionFailedError):
    """The control channel is gone (never opened, closed, broken or 421)."""


class AuthError(FtpError):
    status = Status.AUTH
    fatal = True


class TimeoutExpiredError(FtpError, TimeoutError):
    status = Status.TIMEOUT
    fatal = True


class TransferError(FtpError):
    """Data channel I/O failed or the server refused a command."""

    status = Status.TRANSFER


class NotFoundError(FtpError):
    status = Status.NOT_FOUND


class LocalIOError(FtpError):
    """The caller's source or sink raised while being read or written."""

    status = Status.FILE_IO


class OutOfMemoryError(FtpError):
    status = Status.MEMORY


class TransferCancelled(FtpError):
    status = Status.CANCELLED


class ProtocolError(FtpError):
    """Malformed reply, unexpected reply class or a broken session invariant."""

    status = Status.PROTOCOL
    fatal = True


class SessionBusyError(ProtocolError):
    """An operation was attempted while another one holds the session."""

    fatal = False


@dataclass
class Result(Generic[T]):
    """
    Outcome of a library-surface operation.

    Operations on ``FtpClient`` never raise protocol errors; they hand back
    one of these instead. A result is truthy only on success, so the usual
    ``if await client.upload(...):`` reads naturally.

    Attributes:
        status: ``Status.OK`` or the failure code.
        value: Payload of data-returning operations (listing bytes, file size,
               raw reply text); ``None`` otherwise.
        error: Human readable failure description, empty on success.
        exception: The original error, kept for ``raise_for_status``.
    """

    status: Status = Status.OK
    value: Optional[T] = None
    error: str = ""
    exception: Optional[FtpError] = field(default=None, repr=False, compare=False)

    def __bool__(self) -> bool:
        return self.status == Status.OK

    @classmethod
    def ok(cls, value: Any = None) -> "Result":
        return cls(Status.OK, value)

    @classmethod
    def failed(cls, error: FtpError) -> "Result":
        return cls(error.status, None, str(error), error)

    def raise_for_status(self) -> None:
        """Re-raise the stored error for callers that prefer exceptions.

        Raises:
            FtpError: The error that produced this result, if any.
        """
        if self.exception is not None:
            raise self.exception
