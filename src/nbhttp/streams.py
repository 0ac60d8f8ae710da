"""
Streaming framework for nbhttp.

This module provides streaming abstractions for request and response
bodies. Response streams implement natural backpressure: consumption
drives reading from the network, and the connection goes back to the pool
only once the body has been fully read.
"""

import asyncio
import logging
import zlib
from abc import ABC, abstractmethod
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Coroutine,
    Iterable,
    List,
    Optional,
    TypeVar,
    Union,
    TYPE_CHECKING,
)

from .exceptions import HTTPClientError, StreamError
from .filters import check_body

if TYPE_CHECKING:
    from .http11 import HTTP11Connection  # Forward reference
    from .http_primitives import BodyFilter, Headers

logger = logging.getLogger(__name__)

T = TypeVar("T")
BodySource = Union[bytes, List[bytes], Iterable[bytes], AsyncIterable[bytes]]


class StreamInterface(ABC):
    """
    Base interface for all body streams.

    All streams must implement this interface to ensure
    consistent behavior across the library.
    """

    @abstractmethod
    def __aiter__(self) -> "StreamInterface":
        """Return self as async iterator."""

    @abstractmethod
    async def __anext__(self) -> bytes:
        """Get next chunk of data."""

    @abstractmethod
    async def aclose(self) -> None:
        """Close the stream and cleanup resources."""

    @abstractmethod
    async def aread(self) -> bytes:
        """Read entire stream and return as bytes."""


class RequestStream(StreamInterface):
    """
    Stream for request bodies of unknown length.

    Sent with ``Transfer-Encoding: chunked``. A request stream can be
    consumed only once, so requests carrying one are never retried or
    resent on redirect.
    """

    def __init__(self, data: BodySource) -> None:
        """
        Initialize RequestStream.

        Args:
            data: bytes, a list or iterable of bytes, or an async iterable
        """
        self._data = data
        self._closed = False
        self._consumed = False
        self._iterator: Optional[AsyncIterator[bytes]] = None

    async def _iterate(self) -> AsyncIterator[bytes]:
        data = self._data
        if isinstance(data, (bytes, bytearray)):
            if data:
                yield bytes(data)
        elif hasattr(data, "__aiter__"):
            async for chunk in data:  # type: ignore[union-attr]
                yield _as_bytes(chunk)
        else:
            for chunk in data:  # type: ignore[union-attr]
                yield _as_bytes(chunk)

    def __aiter__(self) -> "RequestStream":
        if self._closed:
            raise StreamError("Cannot iterate over closed stream")
        if self._consumed:
            raise StreamError("Request stream can only be consumed once")
        self._consumed = True
        self._iterator = self._iterate()
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StreamError("Cannot read from closed stream")
        if self._iterator is None:
            raise RuntimeError("Stream not initialized for iteration")
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            raise
        except (TypeError, ValueError, OSError) as e:
            raise StreamError(f"Error reading request body: {e}") from e

    async def aread(self) -> bytes:
        chunks = []
        async for chunk in self:
            chunks.append(chunk)
        return b"".join(chunks)

    async def aclose(self) -> None:
        self._closed = True
        self._iterator = None

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def closed(self) -> bool:
        return self._closed


def _as_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    raise TypeError(f"body chunks must be bytes or str, got {type(chunk).__name__}")


class ContentDecoder:
    """Incremental gzip/deflate decoder for ``Content-Encoding`` bodies."""

    def __init__(self, encoding: str) -> None:
        self.encoding = encoding
        if encoding == "gzip":
            self._decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        else:
            self._decompressor = zlib.decompressobj()
        self._first = True

    def decompress(self, data: bytes) -> bytes:
        try:
            if self._first and self.encoding == "deflate":
                self._first = False
                try:
                    return self._decompressor.decompress(data)
                except zlib.error:
                    # Raw deflate stream without the zlib header.
                    self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
            return self._decompressor.decompress(data)
        except zlib.error as e:
            raise StreamError(f"Invalid {self.encoding} body: {e}") from e

    def flush(self) -> bytes:
        try:
            return self._decompressor.flush()
        except zlib.error as e:
            raise StreamError(f"Invalid {self.encoding} body: {e}") from e


def create_decoder(headers: "Headers") -> Optional[ContentDecoder]:
    """Decoder for the response ``Content-Encoding``, or None for identity."""
    encoding = (headers.get("content-encoding") or "").strip().lower()
    if encoding in ("gzip", "x-gzip"):
        return ContentDecoder("gzip")
    if encoding == "deflate":
        return ContentDecoder("deflate")
    return None


class ResponseStream(StreamInterface):
    """
    Stream for response bodies.

    Reads from the owning connection on the event loop that owns it. The
    stream can be consumed from that loop, from any other event loop
    (``async for``) or from a plain thread (``for``); reads are forwarded
    to the owning loop. When the body is exhausted ``release`` returns the
    connection to the pool; on error or early close ``discard`` closes it.

    Until then the stream holds its connection and counts against the
    per-host limit, so a body that is not read to the end must be closed.
    Using the stream as a context manager does that::

        with result.body as body:
            first = next(body)
    """

    def __init__(
        self,
        connection: "HTTP11Connection",
        headers: "Headers",
        release: Callable[["HTTP11Connection"], Awaitable[None]],
        discard: Callable[["HTTP11Connection"], Awaitable[None]],
        body_filter: Optional["BodyFilter"] = None,
        read_timeout: Optional[float] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._connection = connection
        self._headers = headers
        self._release = release
        self._discard = discard
        self._body_filter = body_filter
        self._read_timeout = read_timeout
        self._loop = loop
        self._decoder = create_decoder(headers)
        self._closed = False
        self._finished = False
        self._bytes_read = 0

    async def _next_chunk(self) -> Optional[bytes]:
        """Read the next decoded chunk on the owning loop."""
        if self._finished:
            return None
        try:
            while True:
                raw = await self._connection.receive_body_chunk(self._read_timeout)
                if raw is None:
                    data = self._decoder.flush() if self._decoder else b""
                    if data:
                        self._account(data)
                    self._finished = True
                    await self._release(self._connection)
                    return data or None

                data = self._decoder.decompress(raw) if self._decoder else raw
                if data:
                    self._account(data)
                    return data
        except (HTTPClientError, asyncio.CancelledError):
            await self._abort()
            raise

    def _account(self, data: bytes) -> None:
        self._bytes_read += len(data)
        check_body(self._body_filter, self._headers, self._bytes_read)

    async def _abort(self) -> None:
        if not self._finished:
            self._finished = True
            await self._discard(self._connection)

    async def _on_owner(self, coro: Coroutine[Any, Any, T]) -> T:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None or running is self._loop:
            return await coro
        return await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(coro, self._loop))

    def _blocking(self, coro: Coroutine[Any, Any, T]) -> T:
        if self._loop is None:
            coro.close()
            raise StreamError("Blocking reads need a stream owned by a client event loop")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            coro.close()
            raise StreamError("Blocking read on the event loop thread would deadlock")
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()

    def __aiter__(self) -> "ResponseStream":
        if self._closed:
            raise StreamError("Cannot iterate over closed stream")
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StreamError("Cannot read from closed stream")
        chunk = await self._on_owner(self._next_chunk())
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    def __iter__(self) -> "ResponseStream":
        if self._closed:
            raise StreamError("Cannot iterate over closed stream")
        return self

    def __next__(self) -> bytes:
        if self._closed:
            raise StreamError("Cannot read from closed stream")
        chunk = self._blocking(self._next_chunk())
        if chunk is None:
            raise StopIteration
        return chunk

    async def aread(self) -> bytes:
        """Read the remaining body and return it as bytes."""
        if self._closed:
            raise StreamError("Cannot read from closed stream")
        chunks = []
        async for chunk in self:
            chunks.append(chunk)
        return b"".join(chunks)

    def read(self) -> bytes:
        """Blocking variant of ``aread`` for threads outside the client loop."""
        return b"".join(self)

    async def aclose(self) -> None:
        """Close the stream; an unfinished body makes the connection unusable."""
        if not self._closed:
            self._closed = True
            await self._on_owner(self._abort())

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._blocking(self._abort())

    async def __aenter__(self) -> "ResponseStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def __enter__(self) -> "ResponseStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def headers(self) -> "Headers":
        return self._headers

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def bytes_read(self) -> int:
        """Get the number of decoded bytes read so far."""
        return self._bytes_read


# Utility functions for working with streams
async def read_stream_to_bytes(stream: AsyncIterable[bytes]) -> bytes:
    """
    Read entire stream and return as bytes.

    Args:
        stream: Async iterable of bytes

    Returns:
        All bytes from the stream concatenated
    """
    chunks = []
    async for chunk in stream:
        chunks.append(chunk)
    return b"".join(chunks)
