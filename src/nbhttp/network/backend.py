"""
Network backend interface for nbhttp.

This module defines the NetworkBackend interface that provides
abstractions for creating and upgrading network connections.
"""

import ssl
from abc import ABC, abstractmethod
from typing import Optional

from .stream import NetworkStream


class NetworkBackend(ABC):
    """
    Interface for network backend implementations.

    DNS resolution, TCP connect and the TLS handshake are all performed
    without blocking the event loop.
    """

    @abstractmethod
    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
    ) -> NetworkStream:
        """
        Connect to a TCP endpoint.

        Args:
            host: The hostname or IP address to connect to.
            port: The port number to connect to.
            timeout: Optional timeout in seconds for resolve + connect.

        Raises:
            OSError: If the connection fails.
            asyncio.TimeoutError: If the connection times out.
        """

    @abstractmethod
    async def start_tls(
        self,
        stream: NetworkStream,
        host: str,
        ssl_context: ssl.SSLContext,
        timeout: Optional[float] = None,
    ) -> NetworkStream:
        """
        Upgrade an established stream to TLS.

        Used both for direct HTTPS connections and for CONNECT tunnels
        through a proxy.

        Args:
            stream: The existing stream to upgrade.
            host: The hostname for SNI and certificate verification.
            ssl_context: Context carrying the verification policy.
            timeout: Optional timeout in seconds for the handshake.

        Raises:
            ssl.SSLError: If the TLS handshake fails.
        """
