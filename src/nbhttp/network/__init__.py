"""
Network backend components for nbhttp.

This module provides the low-level networking abstractions: the stream
and backend interfaces, the asyncio implementation and in-memory mocks.
"""

from .backend import NetworkBackend
from .stream import NetworkStream
from .asyncio_backend import AsyncioNetworkBackend, AsyncioNetworkStream
from .mock import MockNetworkBackend, MockNetworkStream
from .utils import (
    configure_socket,
    create_ssl_context,
    get_ssl_context,
    format_host_header,
    is_ipv6_address,
)

__all__ = [
    "NetworkBackend",
    "NetworkStream",
    "AsyncioNetworkBackend",
    "AsyncioNetworkStream",
    "MockNetworkBackend",
    "MockNetworkStream",
    "configure_socket",
    "create_ssl_context",
    "get_ssl_context",
    "format_host_header",
    "is_ipv6_address",
]
