"""
Network utilities for nbhttp.

Socket tuning, SSL context setup and host header formatting.
"""

import logging
import socket
import ssl
from typing import Optional

logger = logging.getLogger(__name__)


def configure_socket(sock: socket.socket) -> None:
    """
    Apply client socket options to a connected socket.

    Args:
        sock: Connected TCP socket
    """
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        # Platform-specific keep-alive settings
        if hasattr(socket, 'TCP_KEEPIDLE'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 60)
        if hasattr(socket, 'TCP_KEEPINTVL'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 10)
        if hasattr(socket, 'TCP_KEEPCNT'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 6)
    except OSError as e:
        logger.debug(f"Could not set socket options: {e}")


_default_context: Optional[ssl.SSLContext] = None
_insecure_context: Optional[ssl.SSLContext] = None


def create_ssl_context(
    insecure: bool = False,
    alpn_protocols: Optional[list[str]] = None,
    cert_file: Optional[str] = None,
    key_file: Optional[str] = None,
) -> ssl.SSLContext:
    """
    Create an SSL context for client connections.

    Args:
        insecure: Skip certificate and hostname verification
        alpn_protocols: Optional list of ALPN protocols to negotiate
        cert_file: Path to certificate file (for client auth)
        key_file: Path to private key file (for client auth)

    Returns:
        Configured SSL context
    """
    context = ssl.create_default_context()
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    context.set_alpn_protocols(alpn_protocols or ["http/1.1"])
    context.options |= ssl.OP_NO_COMPRESSION
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    if cert_file and key_file:
        context.load_cert_chain(cert_file, key_file)

    return context


def get_ssl_context(insecure: bool = False) -> ssl.SSLContext:
    """Shared client contexts, so TLS sessions can be resumed across connections."""
    global _default_context, _insecure_context
    if insecure:
        if _insecure_context is None:
            _insecure_context = create_ssl_context(insecure=True)
        return _insecure_context
    if _default_context is None:
        _default_context = create_ssl_context()
    return _default_context


def format_host_header(host: str, port: int, scheme: str) -> str:
    """
    Format host header for HTTP requests.

    Args:
        host: Hostname
        port: Port number
        scheme: URL scheme

    Returns:
        Formatted host header string
    """
    if is_ipv6_address(host):
        host = f"[{host}]"
    if (scheme == "https" and port == 443) or (scheme == "http" and port == 80):
        return host
    return f"{host}:{port}"


def is_ipv6_address(host: str) -> bool:
    """
    Check if a host string is an IPv6 address.

    Args:
        host: Host string to check

    Returns:
        True if the host is an IPv6 address
    """
    try:
        socket.inet_pton(socket.AF_INET6, host)
        return True
    except OSError:
        return False
