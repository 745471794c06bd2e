"""
Command and reply framing for the FTP control connection.

Nothing in here touches a socket. ``encode_command`` turns a verb and an
argument into the bytes that go on the wire, ``decode_reply`` pulls one
complete reply off the front of a buffer, and ``ReplyParser`` keeps the
leftover bytes between reads.
"""

import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple, Union

from .errors import InvalidParamError, ProtocolError

CRLF = b"\r\n"

# Longest reply line we are willing to buffer before calling it a framing error
MAXLINE = 8192

# Returned by decode_reply when the buffer does not hold a whole reply yet
NEED_MORE = None

VERB = re.compile(r"[A-Z]+")

# FTP reply codes - what the server is trying to tell you
codes = {
    # 1xx - "Hold on, I'm working on it"
    110: "Restart marker reply",
    120: "Service ready in n minutes",
    125: "Data connection already open; transfer starting",
    150: "File status okay; about to open data connection",
    # 2xx - "Success! Everything went great"
    200: "Command okay",
    202: "Command not implemented, superfluous at this site",
    211: "System status, or system help reply",
    212: "Directory status",
    213: "File status",
    214: "Help message",
    215: "NAME system type",
    220: "Service ready for new user",
    221: "Service closing control connection",
    225: "Data connection open; no transfer in progress",
    226: "Closing data connection",
    227: "Entering Passive Mode",
    229: "Entering Extended Passive Mode",
    230: "User logged in, proceed",
    234: "Security data exchange complete",
    250: "Requested file action okay, completed",
    257: "PATHNAME created",
    # 3xx - "I need more info from you"
    331: "User name okay, need password",
    332: "Need account for login",
    350: "Requested file action pending further information",
    # 4xx - "Something's wrong, but we can try again"
    421: "Service not available, closing control connection",
    425: "Can't open data connection",
    426: "Connection closed; transfer aborted",
    450: "Requested file action not taken",
    451: "Requested action aborted: local error in processing",
    452: "Requested action not taken; insufficient storage space",
    # 5xx - "Nope, that's not going to work"
    500: "Syntax error, command unrecognized",
    501: "Syntax error in parameters or arguments",
    502: "Command not implemented",
    503: "Bad sequence of commands",
    504: "Command not implemented for that parameter",
    530: "Not logged in",
    532: "Need account for storing files",
    534: "Request denied for policy reasons",
    550: "Requested action not taken; file unavailable",
    551: "Requested action aborted: page type unknown",
    552: "Requested file action aborted; exceeded storage allocation",
    553: "Requested action not taken; file name not allowed",
}


@dataclass(frozen=True)
class Reply:
    """
    One complete server reply.

    Attributes:
        code: Three digit status code, 100..599.
        lines: Reply text, one entry per line, with the ``NNN-``/``NNN ``
               prefix removed from the lines that carry it.
    """

    code: int
    lines: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def kind(self) -> int:
        return self.code // 100

    @property
    def preliminary(self) -> bool:
        return self.kind == 1

    @property
    def success(self) -> bool:
        return self.kind == 2

    @property
    def intermediate(self) -> bool:
        return self.kind == 3

    @property
    def transient(self) -> bool:
        return self.kind == 4

    @property
    def permanent(self) -> bool:
        return self.kind == 5

    def matches(self, *patterns: str) -> bool:
        """Check the code against patterns such as ``"226"`` or ``"2xx"``.

        Args:
            patterns: Three character patterns, ``x`` matches any digit.

        Returns:
            bool: True if any pattern matches this reply's code.
        """
        code = str(self.code)
        return any(
            all(p in ("x", c) for p, c in zip(pattern, code))
            for pattern in patterns
        )

    def describe(self) -> str:
        return self.text.strip() or codes.get(self.code, "Unknown reply")

    def __str__(self) -> str:
        return f"{self.code} {self.describe()}"


def encode_command(
    verb: str,
    argument: Union[str, bytes, None] = None,
    encoding: str = "utf-8",
) -> bytes:
    """Encode ``VERB[ SP argument] CRLF``.

    Args:
        verb: Command verb, case-insensitive, ASCII letters only.
        argument: Optional argument. Bytes are sent untouched so 8-bit
                  credentials survive; strings are encoded with ``encoding``.
        encoding: Text encoding for string arguments.

    Returns:
        bytes: The wire form of the command, CRLF terminated.

    Raises:
        InvalidParamError: If the verb is not ASCII letters or the argument
                           contains CR or LF.
    """
    verb = verb.upper()
    if not VERB.fullmatch(verb):
        raise InvalidParamError(f"Invalid command verb: {verb!r}")

    line = verb.encode("ascii")
    if argument is not None:
        if isinstance(argument, str):
            argument = argument.encode(encoding)
        if b"\r" in argument or b"\n" in argument:
            raise InvalidParamError("Command arguments cannot contain CR or LF")
        line += b" " + argument
    return line + CRLF


def split_command(line: str) -> Tuple[str, Optional[str]]:
    """Split a raw command line into verb and argument."""
    verb, _, argument = line.strip(" ").partition(" ")
    return verb, (argument or None)


def _status(line: str) -> Optional[Tuple[int, str]]:
    # "NNN-" or "NNN " (or a bare "NNN") at the start of a line
    head, sep = line[:3], line[3:4]
    if len(head) == 3 and head.isdigit() and head.isascii() and sep in ("-", " ", ""):
        return int(head), sep
    return None


def _lines(data: bytes) -> Iterator[Tuple[bytes, int]]:
    # Yield each complete line with the offset just past its terminator
    start = 0
    while True:
        end = data.find(b"\n", start)
        if end < 0:
            if len(data) - start > MAXLINE:
                raise ProtocolError(f"Reply line longer than {MAXLINE} bytes")
            return
        if end - start > MAXLINE:
            raise ProtocolError(f"Reply line longer than {MAXLINE} bytes")
        yield data[start:end].rstrip(b"\r"), end + 1
        start = end + 1


def decode_reply(
    data: bytes, encoding: str = "utf-8"
) -> Optional[Tuple[Reply, int]]:
    """Decode the first complete reply in ``data``.

    A reply whose first line reads ``NNN-`` continues until a line starting
    with the same ``NNN`` followed by a space. Lines in between are kept
    verbatim except that a leading ``NNN-`` with the same code is stripped.
    Bare LF terminators are accepted as well as CRLF.

    Args:
        data: Bytes received so far on the control connection.
        encoding: Text encoding for the reply text.

    Returns:
        ``(reply, consumed)`` or ``NEED_MORE`` when the buffer ends mid-reply.

    Raises:
        ProtocolError: If the first line has no valid code or a line overruns
                       ``MAXLINE``.
    """
    code = None
    lines: List[str] = []

    for raw, consumed in _lines(data):
        line = raw.decode(encoding, errors="replace")

        if code is None:
            status = _status(line)
            if status is None:
                raise ProtocolError(f"Malformed reply line: {line[:80]!r}")
            code, sep = status
            if not 100 <= code <= 599:
                raise ProtocolError(f"Reply code out of range: {code}")
            lines.append(line[4:])
            if sep != "-":
                return Reply(code, tuple(lines)), consumed
            continue

        status = _status(line)
        if status is not None and status[0] == code:
            lines.append(line[4:])
            if status[1] != "-":
                return Reply(code, tuple(lines)), consumed
        else:
            lines.append(line)

    return NEED_MORE


class ReplyParser:
    """
    Incremental reply decoder.

    Feed it whatever the socket produced; pull complete replies out with
    ``next_reply`` until it returns ``NEED_MORE``.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding
        self.buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self.buffer.extend(data)

    def next_reply(self) -> Optional[Reply]:
        decoded = decode_reply(bytes(self.buffer), self.encoding)
        if decoded is NEED_MORE:
            return NEED_MORE
        reply, consumed = decoded
        del self.buffer[:consumed]
        return reply

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed by a reply."""
        return len(self.buffer)

    def clear(self) -> None:
        self.buffer.clear()
