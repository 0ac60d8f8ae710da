"""
HTTP/1.1 connection implementation for nbhttp.

This module implements the HTTP11Connection class: one NetworkStream bound
to one ConnectionKey, carrying one request/response exchange at a time.
Framing and incremental response parsing are delegated to h11, which
buffers partial status lines, header blocks and body chunks across reads.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import h11

from .http_primitives import ConnectionKey, Headers
from .network.stream import NetworkStream
from .streams import RequestStream
from .exceptions import (
    ConnectError,
    HTTPClientError,
    ProtocolError,
    TimeoutError,
)

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """States of a pooled HTTP/1.1 connection."""
    IDLE = "idle"           # In the pool, available for reuse
    IN_USE = "in_use"       # Exclusively owned by one exchange
    CLOSING = "closing"     # Close in progress
    CLOSED = "closed"       # Closed, cannot be reused


class HTTP11Connection:
    """
    HTTP/1.1 connection.

    While ``IN_USE`` the connection is owned by a single exchange; exchanges
    on one connection are strictly sequential. Returning it to the pool
    starts a new h11 cycle.
    """

    DEFAULT_READ_CHUNK = 65536

    def __init__(
        self,
        stream: NetworkStream,
        key: ConnectionKey,
        read_chunk_size: Optional[int] = None,
        pooled: bool = True,
    ):
        """
        Initialize HTTP/1.1 connection.

        Args:
            stream: The NetworkStream to use for communication
            key: The pool bucket this connection belongs to
            read_chunk_size: Maximum bytes per read
            pooled: False for connections that must never be reused
        """
        self._stream = stream
        self._h11 = h11.Connection(h11.CLIENT)
        self._state = ConnectionState.IN_USE
        self._read_chunk_size = read_chunk_size or self.DEFAULT_READ_CHUNK
        self.key = key
        self.pooled = pooled

        self.created_at = time.monotonic()
        self.last_activity = self.created_at
        self.expires_at: Optional[float] = None
        self._response_started = False

        # Metrics
        self.request_count = 0
        self._bytes_sent = 0
        self._bytes_received = 0

        logger.debug(f"HTTP/1.1 connection created for {key}")

    # Exchange I/O

    async def send_request(
        self,
        method: str,
        target: str,
        headers: Headers,
        body: Optional[Union[bytes, RequestStream]] = None,
    ) -> None:
        """
        Serialize and write one request.

        Raises:
            ConnectError: If the socket fails while writing
            ProtocolError: If h11 rejects the request
        """
        self.request_count += 1
        self._response_started = False

        try:
            await self._send_event(h11.Request(method=method, target=target, headers=headers.raw()))
            if isinstance(body, bytes):
                if body:
                    await self._send_event(h11.Data(data=body))
            elif body is not None:
                async for chunk in body:
                    if chunk:
                        await self._send_event(h11.Data(data=chunk))
            await self._send_event(h11.EndOfMessage())
        except h11.LocalProtocolError as e:
            raise ProtocolError(f"invalid request: {e}", cause=e) from e
        except (OSError, RuntimeError) as e:
            raise ConnectError(f"write to {self.key} failed: {e}", cause=e) from e

    async def _send_event(self, event: h11.Event) -> None:
        data = self._h11.send(event)
        if data:
            await self._stream.write(data)
            self._bytes_sent += len(data)
            self.last_activity = time.monotonic()

    async def receive_response_head(
        self,
        timeout: Optional[float] = None,
        on_first_bytes: Optional[Callable[[], None]] = None,
    ) -> h11.Response:
        """
        Read until the final (non-1xx) response head is parsed.

        Args:
            timeout: Optional per-read timeout in seconds
            on_first_bytes: Called once when the first response bytes arrive

        Raises:
            ProtocolError: On malformed data or premature close
        """
        while True:
            event = self._next_event()

            if event is h11.NEED_DATA:
                data = await self._read(timeout)
                if data:
                    self._mark_started(on_first_bytes)
                continue

            # A pipelined head may already sit in the parser buffer.
            if isinstance(event, (h11.InformationalResponse, h11.Response)):
                self._mark_started(on_first_bytes)

            if isinstance(event, h11.InformationalResponse):
                logger.debug(f"Skipping informational response {event.status_code}")
                continue

            if isinstance(event, h11.Response):
                return event

            if isinstance(event, h11.ConnectionClosed):
                raise ProtocolError("Connection closed by server")

            raise ProtocolError(f"Unexpected event while reading headers: {event!r}")

    def _mark_started(self, on_first_bytes: Optional[Callable[[], None]]) -> None:
        if not self._response_started:
            self._response_started = True
            if on_first_bytes is not None:
                on_first_bytes()

    async def receive_body_chunk(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Receive the next chunk of response body.

        Returns:
            Chunk of data or None at the end of the body
        """
        while True:
            event = self._next_event()

            if event is h11.NEED_DATA:
                await self._read(timeout)
                continue

            if isinstance(event, h11.Data):
                return bytes(event.data)

            if isinstance(event, h11.EndOfMessage):
                return None

            if isinstance(event, h11.ConnectionClosed):
                raise ProtocolError("Connection closed by server")

    def _next_event(self) -> Any:
        try:
            return self._h11.next_event()
        except h11.RemoteProtocolError as e:
            raise ProtocolError(str(e), cause=e) from e

    async def _read(self, timeout: Optional[float]) -> bytes:
        try:
            data = await asyncio.wait_for(
                self._stream.read(self._read_chunk_size),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"read from {self.key} timed out", timeout) from None
        except (OSError, RuntimeError) as e:
            raise ConnectError(f"read from {self.key} failed: {e}", cause=e) from e

        # An empty read is EOF, which h11 needs to finish close-delimited bodies.
        self._h11.receive_data(data)
        self._bytes_received += len(data)
        self.last_activity = time.monotonic()
        return data

    # Lifecycle

    def mark_in_use(self) -> None:
        if self._state is not ConnectionState.IDLE:
            raise RuntimeError(f"Cannot acquire connection in state {self._state.value}")
        self._state = ConnectionState.IN_USE
        self.expires_at = None

    def mark_idle(self, keepalive_ms: int, now: Optional[float] = None) -> None:
        """Start a new h11 cycle and make the connection reusable until expiry."""
        if not self.is_reusable:
            raise RuntimeError("Connection cannot be reused")
        self._h11.start_next_cycle()
        now = time.monotonic() if now is None else now
        self._state = ConnectionState.IDLE
        self.last_activity = now
        self.expires_at = now + keepalive_ms / 1000.0

    def has_expired(self, now: Optional[float] = None) -> bool:
        """True for idle connections past their keep-alive expiry."""
        if self._state is not ConnectionState.IDLE or self.expires_at is None:
            return False
        now = time.monotonic() if now is None else now
        return now >= self.expires_at

    async def close(self) -> None:
        """Close the connection and its stream."""
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSING
        try:
            await self._stream.aclose()
        finally:
            self._state = ConnectionState.CLOSED
        logger.debug(f"Connection to {self.key} closed after {self.request_count} requests")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is ConnectionState.CLOSED or self._stream.is_closed

    @property
    def is_idle(self) -> bool:
        return self._state is ConnectionState.IDLE

    @property
    def is_reusable(self) -> bool:
        """Both sides finished the message and nobody asked to close."""
        return (
            self.pooled
            and not self._stream.is_closed
            and self._h11.our_state is h11.DONE
            and self._h11.their_state is h11.DONE
        )

    @property
    def is_stale(self) -> bool:
        """Idle connection the server already closed."""
        return self._stream.is_closed or self._stream.at_eof()

    @property
    def response_started(self) -> bool:
        return self._response_started

    @property
    def is_tls(self) -> bool:
        return self._stream.is_tls

    @property
    def stream(self) -> NetworkStream:
        return self._stream

    @property
    def metrics(self) -> Dict[str, Any]:
        return {
            "request_count": self.request_count,
            "bytes_sent": self._bytes_sent,
            "bytes_received": self._bytes_received,
            "state": self._state.value,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "expires_at": self.expires_at,
            "tls": self.is_tls,
        }

    def __repr__(self) -> str:
        return f"<HTTP11Connection {self.key} {self._state.value}>"


async def open_tunnel(
    stream: NetworkStream,
    host: str,
    port: int,
    proxy_authorization: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    Issue ``CONNECT host:port`` on a proxy stream.

    Raises:
        ConnectError: If the proxy refuses the tunnel
    """
    authority = f"{host}:{port}"
    conn = h11.Connection(h11.CLIENT)
    headers = [("Host", authority)]
    if proxy_authorization:
        headers.append(("Proxy-Authorization", proxy_authorization))

    try:
        await stream.write(conn.send(h11.Request(method="CONNECT", target=authority, headers=headers)))
        await stream.write(conn.send(h11.EndOfMessage()))

        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                data = await asyncio.wait_for(stream.read(65536), timeout=timeout)
                conn.receive_data(data)
                continue
            if isinstance(event, h11.InformationalResponse):
                continue
            if isinstance(event, h11.Response):
                if not 200 <= event.status_code < 300:
                    raise ConnectError(f"proxy refused CONNECT {authority}: {event.status_code}")
                break
            raise ConnectError(f"unexpected proxy answer to CONNECT: {event!r}")
    except h11.ProtocolError as e:
        raise ConnectError(f"malformed proxy answer to CONNECT: {e}", cause=e) from e
    except asyncio.TimeoutError:
        raise TimeoutError(f"CONNECT {authority} timed out", timeout) from None
    except HTTPClientError:
        raise
    except OSError as e:
        raise ConnectError(f"CONNECT {authority} failed: {e}", cause=e) from e

    leftover, _ = conn.trailing_data
    if leftover:
        logger.warning(f"Discarding {len(leftover)} bytes sent by proxy after CONNECT")
