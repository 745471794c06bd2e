"""
Process-wide setup shared by every session.

Loading the system trust store is the only expensive piece of global state
the engine has, so ``global_init`` builds one verifying TLS context and every
session with default settings borrows it. Calls are reference counted:
each ``global_init`` must be paired with a ``global_cleanup`` and the shared
state is only released when the counter returns to zero. Sessions still
work without any init; they then build their own context.
"""

import logging
import ssl
import threading
from typing import Optional

from .errors import InitError, Status

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_count = 0
_context: Optional[ssl.SSLContext] = None


def global_init() -> Status:
    """Take a reference on the process-wide runtime.

    Returns:
        Status: ``Status.OK``, or ``Status.INIT`` if the default TLS context
        could not be created.
    """
    global _count, _context
    with _lock:
        if _count == 0:
            try:
                _context = ssl.create_default_context()
            except (ssl.SSLError, OSError) as error:
                logger.error("Runtime initialization failed: %s", error)
                return Status.INIT
            logger.debug("Runtime initialized")
        _count += 1
    return Status.OK


def global_cleanup() -> None:
    """Drop a reference; the last one releases the shared state.

    Extra calls beyond the number of successful inits are ignored.
    """
    global _count, _context
    with _lock:
        if _count == 0:
            return
        _count -= 1
        if _count == 0:
            _context = None
            logger.debug("Runtime released")


def references() -> int:
    with _lock:
        return _count


def default_context() -> ssl.SSLContext:
    """Shared verifying client context, or a fresh one outside init/cleanup.

    Raises:
        InitError: If no context can be created at all.
    """
    with _lock:
        if _context is not None:
            return _context
    try:
        return ssl.create_default_context()
    except (ssl.SSLError, OSError) as error:
        raise InitError(f"Cannot create TLS context: {error}")
