import asyncio
import logging
import ssl
from typing import Optional

from aioftp.common import SSLSessionBoundContext

from . import runtime
from .errors import ConnectionFailedError, InvalidParamError, TimeoutExpiredError
from .settings import SSL

logger = logging.getLogger(__name__)


def create_context(settings: SSL) -> ssl.SSLContext:
    """Build the client-side TLS context for a session.

    Default settings borrow the shared context from ``runtime``; anything
    custom gets its own context with secure defaults, then the requested
    relaxations and additions are applied on top.

    Args:
        settings: The session's SSL configuration.

    Returns:
        ssl.SSLContext: Context to use for the control and data connections.

    Raises:
        InvalidParamError: If certificates, bundle or ciphers cannot be loaded.
    """
    if settings.context is not None:
        return settings.context

    if not settings.custom:
        return runtime.default_context()

    try:
        ctx = ssl.create_default_context()
    except ssl.SSLError as error:
        raise InvalidParamError(f"Failed to create default SSL context: {error}")

    # Configure certificate verification behavior
    if not settings.verify:
        # Disable hostname checking and certificate verification
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    # Load client certificate and private key for mutual TLS authentication
    if settings.cert and settings.key:
        try:
            ctx.load_cert_chain(settings.cert, settings.key)
        except (ssl.SSLError, OSError) as error:
            raise InvalidParamError(f"Failed to load client certificate chain: {error}")

    # Load custom CA bundle for certificate verification
    if settings.bundle:
        try:
            ctx.load_verify_locations(cafile=settings.bundle)
        except (ssl.SSLError, OSError) as error:
            raise InvalidParamError(f"Failed to load CA bundle: {error}")

    # Configure allowed cipher suites for encryption control
    if settings.ciphers:
        try:
            ctx.set_ciphers(settings.ciphers)
        except ssl.SSLError as error:
            raise InvalidParamError(f"Invalid cipher suite configuration: {error}")

    return ctx


def data_context(
    writer: asyncio.StreamWriter, fallback: ssl.SSLContext
) -> ssl.SSLContext:
    """Context for a data connection, bound to the control channel's session.

    Servers such as vsftpd with ``require_ssl_reuse`` refuse data connections
    that do not resume the control connection's TLS session, so when the
    control socket has one it is handed to the data handshake.

    Args:
        writer: Writer of the TLS protected control connection.
        fallback: Context to use when no session is available.

    Returns:
        ssl.SSLContext: A context whose handshakes resume the control session.
    """
    ssl_object = writer.get_extra_info("ssl_object")
    if ssl_object is None or ssl_object.session is None:
        return fallback
    return SSLSessionBoundContext(
        ssl.PROTOCOL_TLS_CLIENT,
        context=ssl_object.context,
        session=ssl_object.session,
    )


async def start_tls(
    writer: asyncio.StreamWriter,
    context: ssl.SSLContext,
    hostname: str,
    timeout: Optional[float] = None,
) -> None:
    """Run a client handshake on an established connection.

    The reader paired with ``writer`` keeps working afterwards; asyncio swaps
    the transport underneath both.

    Args:
        writer: Writer of the connection to upgrade.
        context: Client TLS context.
        hostname: Configured host name, used for SNI and certificate checks.
        timeout: Handshake timeout in seconds.

    Raises:
        TimeoutExpiredError: If the handshake does not finish in time.
        ConnectionFailedError: If the handshake or verification fails.
    """
    try:
        await writer.start_tls(
            context,
            server_hostname=hostname,
            ssl_handshake_timeout=timeout,
        )
    except TimeoutError:
        raise TimeoutExpiredError(f"TLS handshake with {hostname} timed out")
    except (ssl.SSLError, ConnectionError, OSError) as error:
        raise ConnectionFailedError(f"TLS handshake with {hostname} failed: {error}")

    ssl_object = writer.get_extra_info("ssl_object")
    if ssl_object is not None:
        logger.debug("TLS established with %s (%s)", hostname, ssl_object.version())
