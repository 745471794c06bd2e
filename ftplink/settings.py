import ssl
import warnings
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class Security(Enum):
    """
    How much of the session gets protected with TLS (RFC 4217).

    NONE never sends AUTH TLS. TRY sends it and carries on in clear text if
    the server refuses. CONTROL requires a protected control connection but
    leaves data connections in clear text (PROT C). ALL requires both
    (PROT P).
    """

    NONE = 0
    TRY = 1
    CONTROL = 2
    ALL = 3

    @property
    def required(self) -> bool:
        return self in (Security.CONTROL, Security.ALL)


@dataclass
class SSL:
    """
    TLS configuration for FTPS sessions.

    The policy decides whether TLS is negotiated at all; everything else
    controls how the client side of the handshake behaves. Data connections
    reuse whatever context the control connection ended up with, so a single
    instance describes the whole session.

    Attributes:
        policy: Which channels to protect, see ``Security``.
        verify: Whether to verify the server certificate chain and host name.
                When False, connections are vulnerable to man-in-the-middle attacks
                but may be necessary for servers with self-signed certificates.
        implicit: Start TLS on the first byte (implicit FTPS, usually port 990)
                  instead of upgrading with AUTH TLS.
        cert: Path to client certificate file for mutual TLS authentication.
        key: Path to client private key file for mutual TLS authentication.
             Must correspond to the certificate specified in 'cert' parameter.
        bundle: Path to custom CA bundle file for certificate verification.
        ciphers: Allowed cipher suites in OpenSSL cipher list format.
        context: Pre-configured SSL context used as-is.
    """

    policy: Security = Security.NONE  # Which channels get TLS
    verify: bool = True  # Whether to verify certificates against trusted CAs
    implicit: bool = False  # TLS from the first byte instead of AUTH TLS
    cert: Optional[str] = None  # Path to client certificate file for mutual TLS
    key: Optional[str] = None  # Path to client private key file for mutual TLS
    bundle: Optional[str] = None  # Path to custom CA bundle file for verification
    ciphers: Optional[str] = None  # Allowed SSL cipher suites string
    context: Optional[ssl.SSLContext] = None  # Caller supplied SSL context

    def __post_init__(self) -> None:
        """
        Validate SSL configuration after initialization.

        Checks that file paths exist, that certificate and key come as a
        pair and that implicit TLS is combined with a policy that actually
        requires it.

        Returns:
            None

        Raises:
            ValueError: If SSL configuration is invalid or inconsistent.
        """
        if not isinstance(self.policy, Security):
            try:
                self.policy = Security(self.policy)
            except ValueError:
                raise ValueError(f"Unknown security policy: {self.policy!r}")

        # Validate certificate and key file pairing
        # Both must be provided together for mutual TLS authentication
        if bool(self.cert) != bool(self.key):
            raise ValueError("Both certificate and key must be provided together for mutual TLS")

        for label, value in (
            ("Certificate", self.cert),
            ("Private key", self.key),
            ("CA bundle", self.bundle),
        ):
            if not value:
                continue
            path = Path(value)
            if not path.exists():
                raise ValueError(f"{label} file not found: {value}")
            if not path.is_file():
                raise ValueError(f"{label} path is not a file: {value}")

        # Validate SSL context parameter type
        if self.context is not None and not isinstance(self.context, ssl.SSLContext):
            raise ValueError("SSL context must be an SSLContext object or None")

        # Implicit TLS cannot fall back, so it only makes sense with a required policy
        if self.implicit and self.policy in (Security.NONE, Security.TRY):
            self.policy = Security.ALL

        # Security warning for disabled certificate verification
        if self.enabled and not self.verify:
            warnings.warn(
                "SSL certificate verification is disabled. "
                "This makes connections vulnerable to man-in-the-middle attacks. "
                "Only use this setting in development or trusted network environments.",
                UserWarning,
                stacklevel=3,
            )

        # Warn about potentially incompatible configuration
        if self.context is not None and any([self.cert, self.key, self.bundle, self.ciphers]):
            warnings.warn(
                "An SSL context was supplied, other SSL parameters will be ignored.",
                UserWarning,
                stacklevel=3,
            )

    @property
    def enabled(self) -> bool:
        return self.policy is not Security.NONE

    @property
    def custom(self) -> bool:
        """True when the context cannot be the shared process-wide default."""
        return self.context is not None or not self.verify or any(
            [self.cert, self.key, self.bundle, self.ciphers]
        )
