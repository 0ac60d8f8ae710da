"""
asyncio network backend.

Sockets are driven by the running asyncio event loop (a selector based
reactor), so resolve, connect, handshake, read and write all suspend the
calling coroutine instead of parking a thread.
"""

import asyncio
import logging
import ssl
from typing import Any, Optional

from .backend import NetworkBackend
from .stream import NetworkStream
from .utils import configure_socket

logger = logging.getLogger(__name__)


class AsyncioNetworkStream(NetworkStream):
    """Network stream over an asyncio ``StreamReader``/``StreamWriter`` pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    async def read(self, max_bytes: Optional[int] = None) -> bytes:
        if self._closed:
            raise RuntimeError("Stream is closed")
        return await self._reader.read(max_bytes or 65536)

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise RuntimeError("Stream is closed")
        self._writer.write(data)
        await self._writer.drain()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug(f"Ignoring error while closing stream: {e}")

    def get_extra_info(self, name: str) -> Optional[Any]:
        return self._writer.get_extra_info(name)

    @property
    def is_closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    def at_eof(self) -> bool:
        return self._reader.at_eof()

    async def start_tls(
        self,
        host: str,
        ssl_context: ssl.SSLContext,
        timeout: Optional[float] = None,
    ) -> "AsyncioNetworkStream":
        await self._writer.start_tls(
            ssl_context,
            server_hostname=host,
            ssl_handshake_timeout=timeout,
        )
        return self


class AsyncioNetworkBackend(NetworkBackend):
    """Network backend using the asyncio event loop of the calling task."""

    def __init__(self, read_limit: int = 2 ** 20) -> None:
        self._read_limit = read_limit

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
    ) -> AsyncioNetworkStream:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, limit=self._read_limit),
            timeout=timeout,
        )
        sock = writer.get_extra_info("socket")
        if sock is not None:
            configure_socket(sock)
        logger.debug(f"TCP connection established to {host}:{port}")
        return AsyncioNetworkStream(reader, writer)

    async def start_tls(
        self,
        stream: NetworkStream,
        host: str,
        ssl_context: ssl.SSLContext,
        timeout: Optional[float] = None,
    ) -> NetworkStream:
        if not isinstance(stream, AsyncioNetworkStream):
            raise TypeError("AsyncioNetworkBackend can only upgrade its own streams")
        upgraded = await stream.start_tls(host, ssl_context, timeout)
        logger.debug(f"TLS established with {host}")
        return upgraded
