import warnings
from dataclasses import dataclass
from typing import Union

Username = Union[str, bytes]
Password = Union[str, bytes]

DEFAULT_USER = "anonymous"
DEFAULT_PASSWORD = "user@example.com"


@dataclass
class Basic:
    """
    Username and password login (USER/PASS).

    FTP servers are ASCII oriented but plenty of them accept 8-bit
    credentials, so both fields may be given as bytes and are then sent
    without any re-encoding. Strings are encoded with the session encoding.

    Credentials travel in clear text unless the control connection has been
    secured with AUTH TLS or implicit TLS.

    Attributes:
        user: Login name sent with USER.
        password: Secret sent with PASS when the server asks for one (331).
    """

    user: Username
    password: Password = ""

    def __post_init__(self) -> None:
        """
        Validate the credentials after initialization.

        Returns:
            None

        Raises:
            ValueError: If the user is empty or either field contains a line
                        break, which would split the command on the wire.
        """
        for name in ("user", "password"):
            value = getattr(self, name)
            if not isinstance(value, (str, bytes)):
                raise ValueError(f"{name.capitalize()} must be str or bytes")
            if isinstance(value, str):
                value = value.encode("utf-8", errors="surrogateescape")
            if b"\r" in value or b"\n" in value:
                raise ValueError(f"{name.capitalize()} cannot contain line breaks")

        if not self.user.strip():
            raise ValueError("Username cannot be empty or whitespace")

        if not self.password and not self.anonymous:
            warnings.warn(
                "Password is empty. Most servers only accept an empty "
                "password for anonymous logins."
            )

    @property
    def anonymous(self) -> bool:
        user = self.user.decode("latin-1") if isinstance(self.user, bytes) else self.user
        return user.lower() in ("anonymous", "ftp")


@dataclass
class Guest(Basic):
    """
    Anonymous login with the conventional e-mail style password.

    Attributes:
        user: Always ``anonymous`` unless overridden.
        password: Defaults to ``user@example.com``.
    """

    user: Username = DEFAULT_USER
    password: Password = DEFAULT_PASSWORD
