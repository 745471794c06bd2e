import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Mode(Enum):
    """
    How the data connection gets established.

    PASSIVE asks the server to listen (EPSV, falling back to PASV) and dials
    out to it, which is what works behind NAT and most firewalls. ACTIVE
    listens locally, advertises the address with EPRT or PORT and waits for
    the server to dial back.
    """

    PASSIVE = 0
    ACTIVE = 1


@dataclass
class Endpoint:
    """
    Where the FTP server lives.

    Attributes:
        host: Host name or literal IPv4/IPv6 address. Kept exactly as given
              because TLS certificate checks run against it, never against
              the resolved address.
        port: TCP port of the control connection, 1..65535.
    """

    host: str
    port: int = 21  # Standard FTP control port

    def __post_init__(self) -> None:
        """
        Validate the endpoint after initialization.

        Returns:
            None

        Raises:
            ValueError: If the host is empty or the port is outside 1..65535.
        """
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("Host cannot be empty")

        # Literal IPv6 addresses sometimes arrive in URL brackets
        self.host = self.host.strip().strip("[]")

        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"Port must be an integer, got {self.port!r}")

        if not (1 <= self.port <= 65535):
            raise ValueError(f"Port out of range: {self.port}")


@dataclass
class Timeout:
    """
    Timeout configuration for FTP sessions.

    Two budgets cover every blocking point of the engine. The connect budget
    covers TCP establishment, the greeting and any TLS handshake on the
    control connection; the operation budget bounds each user-facing
    operation from its first command to its final reply.

    Attributes:
        connect: Seconds allowed for connecting. Zero picks the default.
        operation: Seconds allowed per operation. Zero means no limit.
    """

    connect: float = 30.0  # Time to wait for TCP, greeting and TLS handshake
    operation: float = 60.0  # Time limit for one complete operation

    def __post_init__(self) -> None:
        """
        Validate timeout configuration after initialization.

        Returns:
            None

        Raises:
            ValueError: If either timeout is negative.
        """
        if self.connect < 0:
            raise ValueError("Connect timeout cannot be negative")
        if self.operation < 0:
            raise ValueError("Operation timeout cannot be negative")

        if self.connect == 0:
            self.connect = 30.0

    @property
    def limit(self) -> Optional[float]:
        """Operation budget in the form ``asyncio.wait_for`` expects."""
        return self.operation or None


@dataclass
class Limits:
    """
    Transfer tuning knobs.

    Attributes:
        block: Bytes moved per read or write on the data connection.
        read: Download speed limit in bytes per second, None for unlimited.
        write: Upload speed limit in bytes per second, None for unlimited.
        interval: Bytes between two progress callbacks.
        eprt: Advertise active-mode addresses with EPRT even on IPv4.
    """

    block: int = 8192  # Bytes per read/write on the data connection
    read: Optional[int] = None  # Download speed limit, bytes per second
    write: Optional[int] = None  # Upload speed limit, bytes per second
    interval: int = 65536  # Bytes between progress reports
    eprt: bool = False  # Prefer EPRT over PORT on IPv4

    def __post_init__(self) -> None:
        """
        Validate transfer limits after initialization.

        Returns:
            None

        Raises:
            ValueError: If the block size or interval is not positive, or a
                        speed limit is not positive.
        """
        if self.block <= 0:
            raise ValueError("Block size must be positive")

        if self.interval <= 0:
            raise ValueError("Progress interval must be positive")

        for name in ("read", "write"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name.capitalize()} speed limit must be positive")

        if self.block > 1024 * 1024:
            warnings.warn(
                f"Block size ({self.block}) is unusually large. "
                "Every block is held in memory during transfers."
            )
