"""
Request pipeline.

An ``Exchange`` is one request/response attempt. It acquires a connection,
writes the request, parses the response incrementally and fulfils the
``ResultFuture`` exactly once. Redirects hand a new descriptor to a fresh
exchange serving the same future.

States::

    PENDING -> CONNECTING -> WRITING -> AWAITING_RESPONSE
            -> READING_HEADERS -> READING_BODY -> DONE

``FAILED`` and ``CANCELLED`` are reachable from every non-terminal state.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from .coercion import coerce_body
from .connection_pool import ConnectionPool
from .exceptions import (
    CancelledError,
    ConnectError,
    HTTPClientError,
    ProtocolError,
)
from .filters import check_body
from .future import ResultFuture
from .http11 import HTTP11Connection
from .http_primitives import Coercion, Headers, RequestDescriptor, ResponseResult
from .network.utils import format_host_header
from .redirects import resolve_policy
from .streams import RequestStream, ResponseStream
from .timeouts import TimeoutManager

logger = logging.getLogger(__name__)

RedirectHandler = Callable[[RequestDescriptor, Tuple[str, ...], ResultFuture], None]

METHODS_WITH_BODY = frozenset({"POST", "PUT", "PATCH"})


class ExchangeState(Enum):
    """States of one request/response attempt."""
    PENDING = "pending"
    CONNECTING = "connecting"
    WRITING = "writing"
    AWAITING_RESPONSE = "awaiting_response"
    READING_HEADERS = "reading_headers"
    READING_BODY = "reading_body"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({ExchangeState.DONE, ExchangeState.FAILED, ExchangeState.CANCELLED})

# Normal-flow transitions. Going back to CONNECTING is the stale
# keep-alive retry. FAILED/CANCELLED are allowed from any non-terminal state.
_TRANSITIONS: Dict[ExchangeState, FrozenSet[ExchangeState]] = {
    ExchangeState.PENDING: frozenset({ExchangeState.CONNECTING}),
    ExchangeState.CONNECTING: frozenset({ExchangeState.WRITING}),
    ExchangeState.WRITING: frozenset({ExchangeState.AWAITING_RESPONSE, ExchangeState.CONNECTING}),
    ExchangeState.AWAITING_RESPONSE: frozenset({ExchangeState.READING_HEADERS, ExchangeState.CONNECTING}),
    ExchangeState.READING_HEADERS: frozenset({ExchangeState.READING_BODY}),
    ExchangeState.READING_BODY: frozenset({ExchangeState.DONE}),
}


class Exchange:
    """
    One request/response attempt driven on the event loop that owns its
    connection key.
    """

    def __init__(
        self,
        descriptor: RequestDescriptor,
        pool: ConnectionPool,
        future: ResultFuture,
        history: Tuple[str, ...] = (),
        on_redirect: Optional[RedirectHandler] = None,
    ) -> None:
        self.descriptor = descriptor
        self._pool = pool
        self._future = future
        self._history = history
        self._on_redirect = on_redirect

        self._state = ExchangeState.PENDING
        self._connection: Optional[HTTP11Connection] = None
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_error: Optional[HTTPClientError] = None
        self._timer: Optional[TimeoutManager] = None
        self._started_at: Optional[float] = None

    @property
    def state(self) -> ExchangeState:
        return self._state

    @property
    def history(self) -> Tuple[str, ...]:
        return self._history

    async def run(self) -> None:
        """Execute the exchange and fulfil the future. Never raises request errors."""
        if self._future.done():
            logger.debug(f"Skipping exchange for {self.descriptor.url}: already completed")
            return

        self._task = asyncio.current_task()
        self._loop = asyncio.get_running_loop()
        self._started_at = time.monotonic()
        self._timer = TimeoutManager(self.descriptor.timeout_ms, self.cancel, self._loop)
        self._timer.start()
        self._future.set_cancel_hook(self.cancel_threadsafe)

        redirect: Optional[RequestDescriptor] = None
        try:
            result, redirect = await self._perform()
        except asyncio.CancelledError:
            if self._task is not None:
                self._task.uncancel()
            error = self._cancel_error or CancelledError("Exchange cancelled")
            self._set_state(ExchangeState.CANCELLED)
            logger.debug(f"{self.descriptor.method} {self.descriptor.url} cancelled: {error}")
            await self._abandon_connection()
            await self._complete(self._failure(error))
            return
        except HTTPClientError as e:
            self._set_state(ExchangeState.FAILED)
            logger.error(f"{self.descriptor.method} {self.descriptor.url} failed: {e}")
            await self._abandon_connection()
            await self._complete(self._failure(e))
            return
        except Exception as e:
            self._set_state(ExchangeState.FAILED)
            logger.exception(f"{self.descriptor.method} {self.descriptor.url} failed unexpectedly")
            await self._abandon_connection()
            await self._complete(self._failure(HTTPClientError(f"Unexpected error: {e}", cause=e)))
            return
        finally:
            self._timer.cancel()

        if redirect is not None:
            await self._follow(redirect)
        else:
            await self._complete(result)

    def cancel(self, error: HTTPClientError) -> None:
        """Cancel the exchange. Must be called on the owning loop."""
        if self._state in TERMINAL_STATES or self._cancel_error is not None:
            return
        self._cancel_error = error
        logger.debug(f"Cancelling exchange in state {self._state.value}: {error}")
        if self._task is not None:
            self._task.cancel()

    def cancel_threadsafe(self, error: HTTPClientError) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.cancel, error)

    # Pipeline

    async def _perform(self) -> Tuple[Optional[ResponseResult], Optional[RequestDescriptor]]:
        descriptor = self.descriptor
        retried = False

        while True:
            self._transition(ExchangeState.CONNECTING)
            connection = await self._pool.acquire(descriptor.key, self._connect_timeout(), descriptor)
            self._connection = connection
            reused = connection.request_count > 0

            try:
                self._transition(ExchangeState.WRITING)
                await connection.send_request(
                    descriptor.method,
                    descriptor.target,
                    self._request_headers(),
                    descriptor.body,
                )
                self._transition(ExchangeState.AWAITING_RESPONSE)
                head = await connection.receive_response_head(on_first_bytes=self._on_first_bytes)
            except (ConnectError, ProtocolError) as e:
                stale = reused and not connection.response_started
                if stale and not retried and descriptor.replayable:
                    retried = True
                    logger.warning(f"Keep-alive connection to {descriptor.key} went stale, retrying: {e}")
                    self._connection = None
                    await self._pool.discard(connection)
                    continue
                raise
            break

        self._transition(ExchangeState.READING_BODY)
        status = head.status_code
        headers = Headers(head.headers.raw_items())

        policy = resolve_policy(descriptor)
        if policy.should_follow(descriptor, status, headers):
            policy.check_limit(descriptor, self._history)
            await self._drain(connection, headers)
            self._transition(ExchangeState.DONE)
            return None, policy.next_request(descriptor, status, headers.get("location", ""))

        check_body(descriptor.body_filter, headers, 0)
        stream = ResponseStream(
            connection,
            headers,
            release=self._release,
            discard=self._pool.discard,
            body_filter=descriptor.body_filter,
            read_timeout=self._timer.timeout_seconds if self._timer else None,
            loop=self._loop,
        )

        if descriptor.coerce is Coercion.STREAM:
            body = stream
        else:
            raw = await stream.aread()
            body = coerce_body(raw, headers, descriptor.coerce, descriptor.charset)
        self._connection = None

        self._transition(ExchangeState.DONE)
        elapsed = time.monotonic() - (self._started_at or time.monotonic())
        logger.debug(f"{descriptor.method} {descriptor.url} -> {status} ({elapsed:.3f}s)")
        return ResponseResult(
            status=status,
            headers=headers,
            body=body,
            opts=descriptor.opts,
            url=descriptor.url.geturl(),
            history=self._history,
        ), None

    def _request_headers(self) -> Headers:
        descriptor = self.descriptor
        url = descriptor.url
        host = descriptor.headers.get("Host") or format_host_header(url.host, url.port, url.scheme)
        headers = Headers([("Host", host)] + descriptor.headers.remove("Host").items())

        body = descriptor.body
        if isinstance(body, RequestStream):
            headers = headers.remove("Content-Length").set("Transfer-Encoding", "chunked")
        elif body is not None:
            headers = headers.remove("Transfer-Encoding").set("Content-Length", str(len(body)))
        elif descriptor.method in METHODS_WITH_BODY:
            headers = headers.set("Content-Length", "0")

        if descriptor.keepalive_ms is not None and descriptor.keepalive_ms <= 0:
            headers = headers.set("Connection", "close")

        proxy = descriptor.proxy
        if proxy is not None and url.scheme == "http" and proxy.authorization:
            headers = headers.set_default("Proxy-Authorization", proxy.authorization)
        return headers

    def _connect_timeout(self) -> Optional[float]:
        if self.descriptor.connect_timeout_ms is not None:
            return self.descriptor.connect_timeout_ms / 1000.0
        return self._timer.remaining() if self._timer else None

    def _on_first_bytes(self) -> None:
        self._transition(ExchangeState.READING_HEADERS)

    async def _drain(self, connection: HTTP11Connection, headers: Headers) -> None:
        """Discard a redirect body so the connection can be reused."""
        stream = ResponseStream(
            connection,
            headers,
            release=self._release,
            discard=self._pool.discard,
            read_timeout=self._timer.timeout_seconds if self._timer else None,
            loop=self._loop,
        )
        async for _ in stream:
            pass
        self._connection = None

    async def _release(self, connection: HTTP11Connection) -> None:
        await self._pool.release(connection, self.descriptor.keepalive_ms)

    async def _abandon_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._pool.discard(connection)

    async def _follow(self, descriptor: RequestDescriptor) -> None:
        history = self._history + (self.descriptor.url.geturl(),)
        if self._on_redirect is not None:
            self._on_redirect(descriptor, history, self._future)
            return
        await Exchange(descriptor, self._pool, self._future, history).run()

    async def _complete(self, result: ResponseResult) -> None:
        if not self._future.set_result(result) and isinstance(result.body, ResponseStream):
            await result.body.aclose()

    def _failure(self, error: HTTPClientError) -> ResponseResult:
        return ResponseResult.failure(
            error,
            opts=self.descriptor.opts,
            url=self.descriptor.url.geturl(),
            history=self._history,
        )

    # State machine

    def _transition(self, state: ExchangeState) -> None:
        if state not in _TRANSITIONS.get(self._state, frozenset()):
            raise RuntimeError(f"Illegal exchange transition {self._state.value} -> {state.value}")
        self._set_state(state)

    def _set_state(self, state: ExchangeState) -> None:
        if self._state in TERMINAL_STATES:
            return
        logger.debug(f"{self.descriptor.method} {self.descriptor.url}: {self._state.value} -> {state.value}")
        self._state = state

    def __repr__(self) -> str:
        return f"<Exchange {self.descriptor.method} {self.descriptor.url} {self._state.value}>"
