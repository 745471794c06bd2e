from typing import Optional
from urllib.parse import quote

from .config import Endpoint
from .errors import InvalidParamError

# Longest URL the executor will build for a data-channel target
MAX_URL = 2048


def normalize_path(path: Optional[str]) -> str:
    """Make a remote path absolute, the form servers are sent.

    Args:
        path: Remote path; ``None`` or empty means the root.

    Returns:
        str: The path with a leading ``/``.

    Raises:
        InvalidParamError: If the path is not a string or holds CR, LF or NUL.
    """
    if path is None:
        return "/"
    if not isinstance(path, str):
        raise InvalidParamError(f"Remote path must be a string, got {type(path).__name__}")
    if any(c in path for c in "\r\n\0"):
        raise InvalidParamError("Remote path cannot contain CR, LF or NUL")
    return path if path.startswith("/") else "/" + path


def build_url(endpoint: Endpoint, path: Optional[str] = None, scheme: str = "ftp") -> str:
    """Format ``ftp://host:port/absolute-path`` for a remote path.

    Raises:
        InvalidParamError: If the URL would be longer than ``MAX_URL``.
    """
    host = f"[{endpoint.host}]" if ":" in endpoint.host else endpoint.host
    url = f"{scheme}://{host}:{endpoint.port}{quote(normalize_path(path))}"
    if len(url) > MAX_URL:
        raise InvalidParamError(f"URL longer than {MAX_URL} characters")
    return url
