"""
Mock network implementations for testing.

This module provides in-memory implementations of NetworkStream and
NetworkBackend. They are used by the unit tests and by the response
faking seam in ``nbhttp.testing``.
"""

import asyncio
import ssl
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .backend import NetworkBackend
from .stream import NetworkStream


class MockNetworkStream(NetworkStream):
    """
    Mock network stream for testing.

    Reads are served from an in-memory buffer. With ``auto_eof`` the stream
    reports EOF once the buffer is drained; without it reads wait until more
    data is added or the stream is closed, which lets tests simulate a slow
    or silent server.
    """

    def __init__(
        self,
        data: bytes = b"",
        auto_eof: bool = True,
        fail_writes: bool = False,
        read_delay: float = 0.0,
    ):
        """
        Initialize the mock stream.

        Args:
            data: Initial data to be available for reading.
            auto_eof: Report EOF when no data is left instead of waiting.
            fail_writes: Raise ConnectionResetError on every write.
            read_delay: Seconds to sleep before each read returns.
        """
        self._data = data
        self._position = 0
        self._closed = False
        self._eof = False
        self._auto_eof = auto_eof
        self._fail_writes = fail_writes
        self._read_delay = read_delay
        self._extra_info: Dict[str, Any] = {}
        self._write_buffer: List[bytes] = []
        self._data_available: Optional[asyncio.Event] = None

    async def read(self, max_bytes: Optional[int] = None) -> bytes:
        if self._closed:
            raise RuntimeError("Stream is closed")

        if self._read_delay:
            await asyncio.sleep(self._read_delay)

        while self._position >= len(self._data):
            if self._auto_eof or self._eof:
                return b""
            if self._data_available is None:
                self._data_available = asyncio.Event()
            self._data_available.clear()
            await self._data_available.wait()
            if self._closed:
                raise RuntimeError("Stream is closed")

        if max_bytes is None:
            end = len(self._data)
        else:
            end = min(self._position + max_bytes, len(self._data))
        result = self._data[self._position:end]
        self._position = end
        return result

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise RuntimeError("Stream is closed")
        if self._fail_writes:
            raise ConnectionResetError("Connection reset by peer")
        self._write_buffer.append(data)

    async def aclose(self) -> None:
        self._closed = True
        self._wake()

    def get_extra_info(self, name: str) -> Optional[Any]:
        return self._extra_info.get(name)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def at_eof(self) -> bool:
        return self._eof and self._position >= len(self._data)

    @property
    def written_data(self) -> bytes:
        """Get all data that was written to the stream."""
        return b"".join(self._write_buffer)

    def set_extra_info(self, name: str, value: Any) -> None:
        self._extra_info[name] = value

    def add_data(self, data: bytes) -> None:
        """Add data to be available for reading."""
        self._data += data
        self._wake()

    def feed_eof(self) -> None:
        """Simulate the peer closing its side."""
        self._eof = True
        self._wake()

    def _wake(self) -> None:
        if self._data_available is not None:
            self._data_available.set()


StreamFactory = Callable[[str, int], MockNetworkStream]


class MockNetworkBackend(NetworkBackend):
    """
    Mock network backend for testing.

    Every ``connect_tcp`` creates a new stream: either one queued with
    ``add_stream`` for that endpoint, or one built by ``stream_factory``.
    """

    def __init__(self, stream_factory: Optional[StreamFactory] = None):
        self._stream_factory = stream_factory
        self._queued: Dict[Tuple[str, int], Deque[MockNetworkStream]] = defaultdict(deque)
        self._connections: Dict[Tuple[str, int], List[MockNetworkStream]] = defaultdict(list)
        self._failures: Dict[Tuple[str, int], Exception] = {}
        self.connect_count = 0
        self.tls_count = 0

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
    ) -> MockNetworkStream:
        key = (host, port)
        if key in self._failures:
            raise self._failures[key]

        if self._queued[key]:
            stream = self._queued[key].popleft()
        elif self._stream_factory is not None:
            stream = self._stream_factory(host, port)
        else:
            stream = MockNetworkStream()

        stream.set_extra_info("peername", key)
        stream.set_extra_info("sockname", ("127.0.0.1", 40000 + self.connect_count))
        self._connections[key].append(stream)
        self.connect_count += 1
        return stream

    async def start_tls(
        self,
        stream: NetworkStream,
        host: str,
        ssl_context: ssl.SSLContext,
        timeout: Optional[float] = None,
    ) -> NetworkStream:
        if isinstance(stream, MockNetworkStream):
            stream.set_extra_info("ssl_object", True)
            stream.set_extra_info("server_hostname", host)
        self.tls_count += 1
        return stream

    def add_stream(self, host: str, port: int, stream: MockNetworkStream) -> None:
        """Queue a stream to be returned by the next connect to host:port."""
        self._queued[(host, port)].append(stream)

    def fail_connect(self, host: str, port: int, error: Exception) -> None:
        """Make every connect to host:port raise ``error``."""
        self._failures[(host, port)] = error

    def get_connections(self, host: str, port: int) -> List[MockNetworkStream]:
        return list(self._connections[(host, port)])

    def reset(self) -> None:
        self._queued.clear()
        self._connections.clear()
        self._failures.clear()
        self.connect_count = 0
        self.tls_count = 0
