"""
Tests for the request pipeline.

Exchanges run against a real ConnectionPool over MockNetworkBackend in the
test's event loop.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from nbhttp.connection_pool import ConnectionPool
from nbhttp.exceptions import (
    CancelledError,
    ConnectError,
    HTTPClientError,
    ProtocolError,
    RedirectLimitError,
    SizeLimitError,
    TimeoutError,
)
from nbhttp.exchange import Exchange, ExchangeState
from nbhttp.filters import max_body_filter
from nbhttp.future import ResultFuture
from nbhttp.http_primitives import ConnectionKey
from nbhttp.network.mock import MockNetworkBackend, MockNetworkStream
from nbhttp.options import build_descriptor
from nbhttp.streams import ResponseStream

from helpers import http_response

KEY = ConnectionKey("http", "example.com", 80)
TEXT = [("Content-Type", "text/plain; charset=utf-8")]


async def run_exchange(pool, descriptor, future=None, **kwargs):
    """Run one exchange in its own task and return it with its result."""
    future = future or ResultFuture()
    exchange = Exchange(descriptor, pool, future, **kwargs)
    await asyncio.create_task(exchange.run())
    assert future.done()
    return exchange, future.result()


def request(url="http://example.com/", method="GET", **options):
    return build_descriptor(method, url, options)


def serve(backend, *payloads, **stream_kwargs):
    """Queue one connection to example.com:80 answering with ``payloads``."""
    stream = MockNetworkStream(b"".join(payloads), **stream_kwargs)
    backend.add_stream("example.com", 80, stream)
    return stream


class TestExchange:
    """Test successful exchanges."""

    @pytest.fixture
    def backend(self):
        return MockNetworkBackend()

    @pytest.fixture
    def pool(self, backend):
        return ConnectionPool(backend)

    @pytest.mark.asyncio
    async def test_get_text(self, pool, backend) -> None:
        serve(backend, http_response(200, b"hello", TEXT))
        exchange, result = await run_exchange(pool, request(request_id=7))
        assert result.error is None
        assert result.status == 200
        assert result.body == "hello"
        assert result.headers.get("content-type") == "text/plain; charset=utf-8"
        assert result.url == "http://example.com/"
        assert result.history == ()
        assert result.opts["request_id"] == 7
        assert exchange.state is ExchangeState.DONE
        assert pool.idle_count(KEY) == 1

    @pytest.mark.asyncio
    async def test_request_head(self, pool, backend) -> None:
        stream = serve(backend, http_response(200))
        await run_exchange(pool, request("http://example.com:80/p?q=1", "POST", body=b"data"))
        written = stream.written_data
        assert written.startswith(b"POST /p?q=1 HTTP/1.1\r\nHost: example.com\r\n")
        assert b"Content-Length: 4\r\n" in written
        assert b"User-Agent: nbhttp/" in written
        assert written.endswith(b"\r\n\r\ndata")

    @pytest.mark.asyncio
    async def test_empty_post_has_content_length(self, pool, backend) -> None:
        stream = serve(backend, http_response(200))
        await run_exchange(pool, request(method="POST"))
        assert b"Content-Length: 0\r\n" in stream.written_data

    @pytest.mark.asyncio
    async def test_streamed_body_is_chunked(self, pool, backend) -> None:
        stream = serve(backend, http_response(200))
        await run_exchange(pool, request(method="PUT", body=[b"ab", b"c"]))
        assert b"Transfer-Encoding: chunked\r\n" in stream.written_data
        assert stream.written_data.endswith(b"2\r\nab\r\n1\r\nc\r\n0\r\n\r\n")

    @pytest.mark.asyncio
    async def test_keepalive_disabled(self, pool, backend) -> None:
        stream = serve(backend, http_response(200))
        await run_exchange(pool, request(keepalive=0))
        assert b"Connection: close\r\n" in stream.written_data
        assert pool.idle_count(KEY) == 0
        assert stream.is_closed

    @pytest.mark.asyncio
    async def test_bytes_coercion(self, pool, backend) -> None:
        serve(backend, http_response(200, b"hello", TEXT))
        _, result = await run_exchange(pool, request(as_="bytes"))
        assert result.body == b"hello"

    @pytest.mark.asyncio
    async def test_head_request(self, pool, backend) -> None:
        serve(backend, b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\n")
        _, result = await run_exchange(pool, request(method="HEAD"))
        assert result.status == 200
        assert result.body == b""
        assert pool.idle_count(KEY) == 1

    @pytest.mark.asyncio
    async def test_stream_mode(self, pool, backend) -> None:
        serve(backend, http_response(200, b"streamed body", TEXT))
        exchange, result = await run_exchange(pool, request(**{"as": "stream"}))
        assert exchange.state is ExchangeState.DONE
        assert isinstance(result.body, ResponseStream)
        assert pool.idle_count(KEY) == 0
        assert await result.body.aread() == b"streamed body"
        assert pool.idle_count(KEY) == 1

    @pytest.mark.asyncio
    async def test_error_status_is_not_an_error(self, pool, backend) -> None:
        serve(backend, http_response(500, b"oops", TEXT, reason="Internal Server Error"))
        _, result = await run_exchange(pool, request())
        assert result.error is None
        assert result.status == 500
        assert result.body == "oops"

    @pytest.mark.asyncio
    async def test_already_completed_future(self, pool, backend) -> None:
        future = ResultFuture()
        future.cancel()
        exchange = Exchange(request(), pool, future)
        await exchange.run()
        assert exchange.state is ExchangeState.PENDING
        assert backend.connect_count == 0

    def test_illegal_transition(self) -> None:
        exchange = Exchange(request(), ConnectionPool(MockNetworkBackend()), ResultFuture())
        with pytest.raises(RuntimeError):
            exchange._transition(ExchangeState.READING_BODY)


class TestExchangeRedirects:
    """Test redirect following."""

    @pytest.fixture
    def backend(self):
        return MockNetworkBackend()

    @pytest.fixture
    def pool(self, backend):
        return ConnectionPool(backend)

    @pytest.mark.asyncio
    async def test_follow_on_same_connection(self, pool, backend) -> None:
        serve(
            backend,
            http_response(302, b"moved", [("Location", "/final")], reason="Found"),
            http_response(200, b"done", TEXT),
        )
        _, result = await run_exchange(pool, request("http://example.com/start"))
        assert result.status == 200
        assert result.body == "done"
        assert result.url == "http://example.com/final"
        assert result.history == ("http://example.com/start",)
        assert backend.connect_count == 1

    @pytest.mark.asyncio
    async def test_redirect_limit(self, pool, backend) -> None:
        loop = http_response(302, b"", [("Location", "/loop")], reason="Found")
        serve(backend, loop, loop, loop)
        _, result = await run_exchange(pool, request(max_redirects=1))
        assert isinstance(result.error, RedirectLimitError)
        assert len(result.error.history) == 1

    @pytest.mark.asyncio
    async def test_follow_disabled(self, pool, backend) -> None:
        serve(backend, http_response(301, b"", [("Location", "/x")], reason="Moved Permanently"))
        _, result = await run_exchange(pool, request(follow_redirects=False))
        assert result.status == 301
        assert result.headers.get("location") == "/x"

    @pytest.mark.asyncio
    async def test_on_redirect_handler(self, pool, backend) -> None:
        serve(backend, http_response(303, b"", [("Location", "http://other.com/y")], reason="See Other"))
        handed_over = []
        future = ResultFuture()
        exchange = Exchange(
            request(method="POST", body=b"x"),
            pool,
            future,
            on_redirect=lambda d, h, f: handed_over.append((d, h, f)),
        )
        await asyncio.create_task(exchange.run())

        descriptor, history, handed_future = handed_over[0]
        assert descriptor.method == "GET"
        assert descriptor.url.geturl() == "http://other.com/y"
        assert history == ("http://example.com/",)
        assert handed_future is future
        assert not future.done()


class TestExchangeFailures:
    """Test errors delivered through the result."""

    @pytest.fixture
    def backend(self):
        return MockNetworkBackend()

    @pytest.fixture
    def pool(self, backend):
        return ConnectionPool(backend)

    @pytest.mark.asyncio
    async def test_connect_error(self, pool, backend) -> None:
        backend.fail_connect("example.com", 80, ConnectionRefusedError("refused"))
        exchange, result = await run_exchange(pool, request())
        assert isinstance(result.error, ConnectError)
        assert result.status is None
        assert exchange.state is ExchangeState.FAILED

    @pytest.mark.asyncio
    async def test_acquire_failure_holds_no_connection(self) -> None:
        pool = AsyncMock(spec=ConnectionPool)
        pool.acquire.side_effect = ConnectError("refused")
        exchange, result = await run_exchange(pool, request())
        assert isinstance(result.error, ConnectError)
        assert exchange.state is ExchangeState.FAILED
        pool.acquire.assert_awaited_once()
        pool.discard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_closes_connection(self, pool, backend) -> None:
        stream = serve(backend, auto_eof=False)
        started = time.monotonic()
        exchange, result = await run_exchange(pool, request(timeout=50))
        elapsed = time.monotonic() - started

        assert isinstance(result.error, TimeoutError)
        assert exchange.state is ExchangeState.CANCELLED
        assert elapsed < 0.5
        assert stream.is_closed
        assert pool.idle_count(KEY) == 0
        assert pool.in_use_count(KEY) == 0

    @pytest.mark.asyncio
    async def test_caller_cancellation(self, pool, backend) -> None:
        stream = serve(backend, auto_eof=False)
        future = ResultFuture()
        exchange = Exchange(request(), pool, future)
        task = asyncio.create_task(exchange.run())
        await asyncio.sleep(0.02)
        assert future.cancel()
        await task

        assert isinstance(future.result().error, CancelledError)
        assert exchange.state is ExchangeState.CANCELLED
        assert stream.is_closed

    @pytest.mark.asyncio
    async def test_protocol_error(self, pool, backend) -> None:
        serve(backend, b"garbage\r\n\r\n")
        exchange, result = await run_exchange(pool, request())
        assert isinstance(result.error, ProtocolError)
        assert exchange.state is ExchangeState.FAILED

    @pytest.mark.asyncio
    async def test_filter_rejects_declared_length(self, pool, backend) -> None:
        stream = serve(backend, http_response(200, b"x" * 100))
        _, result = await run_exchange(pool, request(filter=max_body_filter(10)))
        assert isinstance(result.error, SizeLimitError)
        assert result.error.limit == 10
        assert stream.is_closed

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, pool, backend) -> None:
        serve(backend, http_response(200, b"x"))

        def broken_filter(headers, total):
            raise RuntimeError("filter bug")

        _, result = await run_exchange(pool, request(filter=broken_filter))
        assert type(result.error) is HTTPClientError
        assert isinstance(result.error.cause, RuntimeError)


class TestStaleRetry:
    """Test the single retry on a dead keep-alive connection."""

    @pytest.fixture
    def backend(self):
        return MockNetworkBackend()

    @pytest.fixture
    def pool(self, backend):
        return ConnectionPool(backend)

    @pytest.mark.asyncio
    async def test_retry_on_fresh_connection(self, pool, backend) -> None:
        serve(backend, http_response(200, b"first", TEXT))
        serve(backend, http_response(200, b"second", TEXT))

        _, first = await run_exchange(pool, request())
        assert first.body == "first"
        # The reused connection hits EOF before any response byte.
        _, second = await run_exchange(pool, request())
        assert second.error is None
        assert second.body == "second"
        assert backend.connect_count == 2

    @pytest.mark.asyncio
    async def test_streamed_body_not_retried(self, pool, backend) -> None:
        serve(backend, http_response(200, b"first"))
        serve(backend, http_response(200, b"second"))

        await run_exchange(pool, request())
        _, result = await run_exchange(pool, request(method="POST", body=[b"once"]))
        assert isinstance(result.error, ProtocolError)
        assert backend.connect_count == 1

    @pytest.mark.asyncio
    async def test_fresh_connection_not_retried(self, pool, backend) -> None:
        serve(backend, b"")
        _, result = await run_exchange(pool, request())
        assert isinstance(result.error, ProtocolError)
        assert backend.connect_count == 1
