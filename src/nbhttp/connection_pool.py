"""
HTTP/1.1 connection pool implementation.

This module provides a keyed pool of idle HTTP/1.1 connections with
keep-alive expiry, a background eviction sweep and an interception seam
that lets tests serve canned responses without real I/O.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set

from .http11 import ConnectionState, HTTP11Connection, open_tunnel
from .http_primitives import ConnectionKey, RequestDescriptor
from .network import NetworkBackend, NetworkStream, get_ssl_context
from .exceptions import ConnectError, HTTPClientError, TimeoutError

logger = logging.getLogger(__name__)

Interceptor = Callable[[ConnectionKey, Optional[RequestDescriptor]], Optional[NetworkStream]]


class _Bucket:
    """Connections for one key. Mutations happen under ``lock`` only."""

    __slots__ = ("key", "lock", "idle", "in_use", "pending", "loop", "_available")

    def __init__(self, key: ConnectionKey, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self.key = key
        self.lock = threading.Lock()
        self.idle: List[HTTP11Connection] = []
        self.in_use: Set[HTTP11Connection] = set()
        self.pending = 0
        self.loop = loop
        self._available: Optional[asyncio.Event] = None

    @property
    def available(self) -> asyncio.Event:
        if self._available is None:
            self._available = asyncio.Event()
        return self._available

    def notify(self) -> None:
        if self._available is not None:
            self._available.set()


class ConnectionPool:
    """
    HTTP/1.1 connection pool.

    Buckets are keyed by ``ConnectionKey`` and each has its own lock, so
    unrelated hosts never contend. A bucket is bound to the event loop
    that created it; the scheduler routes every key to the same loop.
    """

    DEFAULT_KEEPALIVE_MS = 120_000

    def __init__(
        self,
        backend: NetworkBackend,
        max_connections_per_host: Optional[int] = None,
        keepalive_ms: int = DEFAULT_KEEPALIVE_MS,
        cleanup_interval: float = 5.0,
        read_chunk_size: Optional[int] = None,
    ):
        """
        Initialize connection pool.

        Args:
            backend: Network backend to use for connections
            max_connections_per_host: Capacity per key, None for unbounded
            keepalive_ms: Keep-alive TTL used when a release passes None
            cleanup_interval: Seconds between eviction sweeps
            read_chunk_size: Maximum bytes per socket read
        """
        if max_connections_per_host is not None and max_connections_per_host < 1:
            raise ValueError("max_connections_per_host must be at least 1")
        self._backend = backend
        self._max_connections_per_host = max_connections_per_host
        self._keepalive_ms = keepalive_ms
        self._cleanup_interval = cleanup_interval
        self._read_chunk_size = read_chunk_size

        self._buckets: Dict[ConnectionKey, _Bucket] = {}
        self._buckets_lock = threading.Lock()
        self._interceptors: List[Interceptor] = []

        # Metrics
        self._total_connections_created = 0
        self._total_connections_closed = 0
        self._total_reuses = 0

        # Cleanup tasks, one per event loop
        self._cleanup_tasks: Dict[asyncio.AbstractEventLoop, asyncio.Task] = {}
        self._closed = False

        logger.debug(
            f"Connection pool initialized: per_host={max_connections_per_host}, "
            f"keepalive={keepalive_ms}ms"
        )

    async def start(self) -> None:
        """Start the eviction sweep on the running event loop."""
        loop = asyncio.get_running_loop()
        if loop not in self._cleanup_tasks:
            self._cleanup_tasks[loop] = loop.create_task(self._cleanup_loop())
            logger.debug("Connection pool cleanup task started")

    async def stop(self) -> None:
        """Stop the sweep and close every connection owned by the running loop."""
        self._closed = True
        loop = asyncio.get_running_loop()

        task = self._cleanup_tasks.pop(loop, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        for bucket in self._owned_buckets(loop):
            with bucket.lock:
                connections = bucket.idle + list(bucket.in_use)
                bucket.idle.clear()
                bucket.in_use.clear()
            for connection in connections:
                await self._close(connection)
            bucket.notify()

        logger.debug(f"Connection pool stopped. Closed {self._total_connections_closed} connections")

    # Interception seam

    def add_interceptor(self, interceptor: Interceptor) -> None:
        """
        Register a function consulted before any real connection is made.

        ``interceptor(key, descriptor)`` returns a NetworkStream to serve the
        exchange from, or None to fall through to the next interceptor and
        finally to the network. Intercepted connections are never pooled.
        """
        self._interceptors.append(interceptor)

    def remove_interceptor(self, interceptor: Interceptor) -> None:
        if interceptor in self._interceptors:
            self._interceptors.remove(interceptor)

    # Acquire / release

    async def acquire(
        self,
        key: ConnectionKey,
        timeout: Optional[float] = None,
        descriptor: Optional[RequestDescriptor] = None,
    ) -> HTTP11Connection:
        """
        Get a connection for ``key``, reusing an idle one when possible.

        Args:
            key: Target bucket
            timeout: Seconds allowed for waiting on capacity plus connecting
            descriptor: The request being served, passed to interceptors

        Raises:
            ConnectError: If the pool is closed or the connection fails
            TimeoutError: If no connection is available within ``timeout``
        """
        if self._closed:
            raise ConnectError("Connection pool is closed")

        for interceptor in list(self._interceptors):
            stream = interceptor(key, descriptor)
            if stream is not None:
                logger.debug(f"Request to {key} served by interceptor {interceptor!r}")
                return HTTP11Connection(stream, key, self._read_chunk_size, pooled=False)

        bucket = self._bucket(key)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            connection = None
            stale: List[HTTP11Connection] = []
            can_create = False
            # Cleared before inspection; a notify during the awaits below wakes the next wait.
            bucket.available.clear()

            with bucket.lock:
                now = time.monotonic()
                while bucket.idle:
                    candidate = bucket.idle.pop()
                    if candidate.has_expired(now) or candidate.is_stale:
                        stale.append(candidate)
                        continue
                    candidate.mark_in_use()
                    bucket.in_use.add(candidate)
                    connection = candidate
                    break
                if connection is None:
                    limit = self._max_connections_per_host
                    if limit is None or len(bucket.in_use) + bucket.pending < limit:
                        bucket.pending += 1
                        can_create = True

            for expired in stale:
                logger.debug(f"Dropping expired idle connection to {key}")
                await self._close(expired)

            if connection is not None:
                self._total_reuses += 1
                logger.debug(f"Reusing connection to {key}")
                return connection
            if can_create:
                break

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(f"no connection available for {key}", timeout)
            try:
                await asyncio.wait_for(bucket.available.wait(), remaining)
            except asyncio.TimeoutError:
                raise TimeoutError(f"no connection available for {key}", timeout) from None

        remaining = None if deadline is None else max(0.0, deadline - loop.time())
        try:
            connection = await self._connect(key, remaining)
        except BaseException:
            with bucket.lock:
                bucket.pending -= 1
            bucket.notify()
            raise

        with bucket.lock:
            bucket.pending -= 1
            bucket.in_use.add(connection)
        return connection

    async def release(self, connection: HTTP11Connection, keepalive_ms: Optional[int] = None) -> None:
        """
        Return a connection after a completed exchange.

        ``keepalive_ms <= 0`` closes it; None uses the pool default.
        Connections whose HTTP state forbids reuse are closed as well.
        """
        keepalive = self._keepalive_ms if keepalive_ms is None else keepalive_ms
        bucket = self._buckets.get(connection.key)

        pooled = False
        if bucket is not None and connection.pooled:
            with bucket.lock:
                bucket.in_use.discard(connection)
                if not self._closed and keepalive > 0 and connection.is_reusable:
                    connection.mark_idle(keepalive)
                    bucket.idle.append(connection)
                    pooled = True

        if pooled:
            logger.debug(f"Returned connection to pool for {connection.key} (keepalive {keepalive}ms)")
        else:
            await self._close(connection)
        if bucket is not None:
            bucket.notify()

    async def discard(self, connection: HTTP11Connection) -> None:
        """Close a connection whose framing state is untrusted."""
        bucket = self._buckets.get(connection.key)
        if bucket is not None:
            with bucket.lock:
                bucket.in_use.discard(connection)
                if connection in bucket.idle:
                    bucket.idle.remove(connection)
        await self._close(connection)
        if bucket is not None:
            bucket.notify()

    async def evict_idle(self, now: Optional[float] = None) -> int:
        """
        Close idle connections past their keep-alive expiry.

        Only buckets owned by the running loop are swept.

        Returns:
            Number of evicted connections
        """
        now = time.monotonic() if now is None else now
        loop = asyncio.get_running_loop()
        evicted: List[HTTP11Connection] = []

        for bucket in self._owned_buckets(loop):
            with bucket.lock:
                keep = []
                for connection in bucket.idle:
                    if connection.has_expired(now) or connection.is_stale:
                        evicted.append(connection)
                    else:
                        keep.append(connection)
                bucket.idle[:] = keep

        for connection in evicted:
            await self._close(connection)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} idle connections")
        return len(evicted)

    # Internals

    async def _connect(self, key: ConnectionKey, timeout: Optional[float]) -> HTTP11Connection:
        proxy = key.proxy
        host, port = (proxy.host, proxy.port) if proxy is not None else (key.host, key.port)

        stream: Optional[NetworkStream] = None
        try:
            stream = await self._backend.connect_tcp(host, port, timeout)
            if proxy is not None and key.scheme == "https":
                await open_tunnel(stream, key.host, key.port, proxy.authorization, timeout)
            if key.scheme == "https":
                stream = await self._backend.start_tls(
                    stream, key.host, get_ssl_context(key.insecure), timeout
                )
        except asyncio.TimeoutError:
            await self._close_stream(stream)
            raise TimeoutError(f"connect to {key} timed out", timeout) from None
        except HTTPClientError:
            await self._close_stream(stream)
            raise
        except OSError as e:
            await self._close_stream(stream)
            logger.error(f"Failed to create connection to {key}: {e}")
            raise ConnectError(f"Failed to connect to {key}: {e}", cause=e) from e
        except BaseException:
            await self._close_stream(stream)
            raise

        self._total_connections_created += 1
        logger.debug(f"Created new connection to {key}")
        return HTTP11Connection(stream, key, self._read_chunk_size)

    async def _close_stream(self, stream: Optional[NetworkStream]) -> None:
        if stream is not None:
            try:
                await stream.aclose()
            except OSError as e:
                logger.warning(f"Error closing stream: {e}")

    async def _close(self, connection: HTTP11Connection) -> None:
        if connection.state is ConnectionState.CLOSED:
            return
        try:
            await connection.close()
        except OSError as e:
            logger.warning(f"Error closing connection: {e}")
        if connection.pooled:
            self._total_connections_closed += 1

    def _bucket(self, key: ConnectionKey) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            with self._buckets_lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    bucket = _Bucket(key, asyncio.get_running_loop())
                    self._buckets[key] = bucket
        return bucket

    def _owned_buckets(self, loop: asyncio.AbstractEventLoop) -> List[_Bucket]:
        with self._buckets_lock:
            return [b for b in self._buckets.values() if b.loop is loop]

    async def _cleanup_loop(self) -> None:
        """Background cleanup loop."""
        while not self._closed:
            try:
                await asyncio.sleep(self._cleanup_interval)
                if not self._closed:
                    await self.evict_idle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")

    # Introspection

    def idle_count(self, key: ConnectionKey) -> int:
        bucket = self._buckets.get(key)
        if bucket is None:
            return 0
        with bucket.lock:
            return len(bucket.idle)

    def in_use_count(self, key: ConnectionKey) -> int:
        bucket = self._buckets.get(key)
        if bucket is None:
            return 0
        with bucket.lock:
            return len(bucket.in_use)

    def idle_connections(self, key: ConnectionKey) -> List[HTTP11Connection]:
        bucket = self._buckets.get(key)
        if bucket is None:
            return []
        with bucket.lock:
            return list(bucket.idle)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def metrics(self) -> Dict[str, Any]:
        """
        Get pool metrics.

        Returns:
            Dictionary with pool metrics
        """
        with self._buckets_lock:
            buckets = list(self._buckets.values())
        per_key = {}
        for bucket in buckets:
            with bucket.lock:
                per_key[str(bucket.key)] = {"idle": len(bucket.idle), "in_use": len(bucket.in_use)}

        return {
            "connections": per_key,
            "total_connections_created": self._total_connections_created,
            "total_connections_closed": self._total_connections_closed,
            "total_reuses": self._total_reuses,
            "max_connections_per_host": self._max_connections_per_host,
            "keepalive_ms": self._keepalive_ms,
            "cleanup_interval": self._cleanup_interval,
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()
