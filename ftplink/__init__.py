__version__ = "1.0.0"
__author__ = "Andrew Hernandez"
__email__ = "andromedeyz@hotmail.com"
__license__ = "MIT"
__description__ = "An async FTP/FTPS client protocol engine for Python with passive and active data connections, TLS policies and progress reporting."
__url__ = "http://github.com/ApaxPhoenix/FtpLink"

import sys

# Make sure you're running a Python version with StreamWriter.start_tls
if sys.version_info < (3, 11):
    raise RuntimeError("FtpLink needs Python 3.11 or newer to work properly")

# The URL based factory - build clients from ftp:// and ftps:// endpoints
from .ftp import FtpLink

# The library surface - every operation hands back a Result
from .core import FtpClient

# Protocol engine, for callers that want exceptions instead of results
from .session import Session, State
from .executor import Executor
from .data import Direction

# Fine-tune how your FTP connections behave
from .config import (
    Endpoint,  # Where the server lives
    Mode,  # Passive or active data connections
    Timeout,  # Connect and per-operation time limits
    Limits,  # Block size, speed limits and progress interval
)

# Different ways to handle user authentication
from .auth import (
    Basic,  # Classic username and password login
    Guest,  # Anonymous access for public servers
)

# Keep your connections secure
from .settings import (
    SSL,  # TLS configuration for FTPS
    Security,  # NONE, TRY, CONTROL or ALL
)

# What can go wrong, and how it is reported
from .errors import (
    Status,
    Result,
    FtpError,
    InitError,
    InvalidParamError,
    ConnectionFailedError,
    ConnectionLostError,
    AuthError,
    TimeoutExpiredError,
    TransferError,
    NotFoundError,
    LocalIOError,
    OutOfMemoryError,
    TransferCancelled,
    ProtocolError,
    SessionBusyError,
)

# Process-wide lifecycle
from .runtime import global_init, global_cleanup

# FTP response codes - what the server is trying to tell you
from .codec import Reply, codes

from .paths import normalize_path, build_url

# Everything you can import and use
__all__ = [
    # The main classes you'll work with
    "FtpLink",
    "FtpClient",
    # Protocol engine
    "Session",
    "State",
    "Executor",
    "Direction",
    "Reply",
    "codes",
    # Configuration options
    "Endpoint",
    "Mode",
    "Timeout",
    "Limits",
    # Authentication types
    "Basic",
    "Guest",
    # Security settings
    "SSL",
    "Security",
    # Errors and results
    "Status",
    "Result",
    "FtpError",
    "InitError",
    "InvalidParamError",
    "ConnectionFailedError",
    "ConnectionLostError",
    "AuthError",
    "TimeoutExpiredError",
    "TransferError",
    "NotFoundError",
    "LocalIOError",
    "OutOfMemoryError",
    "TransferCancelled",
    "ProtocolError",
    "SessionBusyError",
    # Lifecycle and helpers
    "global_init",
    "global_cleanup",
    "normalize_path",
    "build_url",
    # Package info
    "__version__",
    "__author__",
    "__email__",
    "__license__",
    "__description__",
    "__url__",
]
