"""
Asynchronous HTTP client.

``HTTPClient`` submits requests to the event loop that owns their
connection key and returns a ``ResultFuture`` immediately. Results can be
consumed by blocking, by continuation or by awaiting the future.

Example::

    with HTTPClient(timeout=5000) as client:
        result = client.get("http://example.com/", query_params={"q": "x"}).result()
        if result.error is None:
            print(result.status, result.body)
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Mapping, Optional, Set, Tuple

from .config import ClientConfig
from .connection_pool import ConnectionPool
from .exceptions import CancelledError
from .exchange import Exchange
from .future import Continuation, ResultFuture
from .http_primitives import RequestDescriptor, ResponseResult
from .network import AsyncioNetworkBackend, NetworkBackend
from .options import build_descriptor, merge_options
from .scheduler import EventLoopScheduler

logger = logging.getLogger(__name__)


class HTTPClient:
    """
    Non-blocking HTTP/1.1 client.

    Args:
        config: Client configuration, defaults to ``ClientConfig()``
        backend: Network backend, defaults to the asyncio backend
        scheduler: Event-loop scheduler, defaults to one sized by the config
        **defaults: Request options applied to every call
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        backend: Optional[NetworkBackend] = None,
        scheduler: Optional[EventLoopScheduler] = None,
        **defaults: Any,
    ) -> None:
        config = config or ClientConfig()
        if defaults:
            config = config.with_defaults(**defaults)
        self.config = config

        self._backend = backend or AsyncioNetworkBackend()
        self._pool = ConnectionPool(
            self._backend,
            max_connections_per_host=config.max_connections_per_host,
            keepalive_ms=config.keepalive_ms,
            cleanup_interval=config.cleanup_interval,
            read_chunk_size=config.read_chunk_size,
        )
        # An injected scheduler may be shared, so close() leaves it running.
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or EventLoopScheduler(config.worker_threads)
        self._scheduler.start()
        self._scheduler.run_on_all(self._pool.start)

        self._lock = threading.Lock()
        self._closed = False
        self._tasks: Set["concurrent.futures.Future[None]"] = set()
        logger.debug(f"HTTP client started with {self._scheduler.workers} loop thread(s)")

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def scheduler(self) -> EventLoopScheduler:
        return self._scheduler

    @property
    def closed(self) -> bool:
        return self._closed

    def request(
        self,
        method: str,
        url: str,
        opts: Optional[Mapping[str, Any]] = None,
        callback: Optional[Continuation] = None,
        **options: Any,
    ) -> ResultFuture:
        """
        Submit a request and return its future immediately.

        Args:
            method: HTTP method
            url: Absolute http(s) URL
            opts: Request options as a mapping
            callback: Continuation invoked exactly once with the result
            **options: Request options as keywords, overriding ``opts``

        Raises:
            ValueError: If the URL or an option is invalid
            RuntimeError: If the client is closed
        """
        merged = merge_options(self.config.defaults, opts, options)
        descriptor = build_descriptor(method, url, merged, self.config)
        return self.request_descriptor(descriptor, callback)

    def request_descriptor(
        self,
        descriptor: RequestDescriptor,
        callback: Optional[Continuation] = None,
    ) -> ResultFuture:
        """Submit an already built descriptor."""
        if self._closed:
            raise RuntimeError("Client is closed")
        future = ResultFuture()
        if callback is not None:
            future.add_done_callback(callback)
        self._dispatch(descriptor, (), future)
        return future

    def _dispatch(self, descriptor: RequestDescriptor, history: Tuple[str, ...], future: ResultFuture) -> None:
        def _abandoned(message: str) -> None:
            future.set_result(ResponseResult.failure(
                CancelledError(message),
                opts=descriptor.opts,
                url=descriptor.url.geturl(),
                history=history,
            ))

        def _on_task_done(task: "concurrent.futures.Future[None]") -> None:
            with self._lock:
                self._tasks.discard(task)
            # A task cancelled before its first step never runs the exchange.
            if task.cancelled():
                _abandoned("Client is closed")
            elif task.exception() is not None:
                _abandoned(f"Exchange aborted: {task.exception()}")

        exchange = Exchange(descriptor, self._pool, future, history, on_redirect=self._dispatch)
        task = None
        with self._lock:
            if not self._closed:
                try:
                    task = self._scheduler.submit(exchange.run(), descriptor.key)
                except RuntimeError as e:
                    logger.debug(f"Could not schedule {descriptor.method} {descriptor.url}: {e}")
                else:
                    self._tasks.add(task)
        if task is None:
            _abandoned("Client is closed")
            return
        task.add_done_callback(_on_task_done)

    def get(self, url: str, opts: Optional[Mapping[str, Any]] = None,
            callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("GET", url, opts, callback, **options)

    def head(self, url: str, opts: Optional[Mapping[str, Any]] = None,
             callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("HEAD", url, opts, callback, **options)

    def post(self, url: str, opts: Optional[Mapping[str, Any]] = None,
             callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("POST", url, opts, callback, **options)

    def put(self, url: str, opts: Optional[Mapping[str, Any]] = None,
            callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("PUT", url, opts, callback, **options)

    def patch(self, url: str, opts: Optional[Mapping[str, Any]] = None,
              callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("PATCH", url, opts, callback, **options)

    def delete(self, url: str, opts: Optional[Mapping[str, Any]] = None,
               callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("DELETE", url, opts, callback, **options)

    def options(self, url: str, opts: Optional[Mapping[str, Any]] = None,
                callback: Optional[Continuation] = None, **options: Any) -> ResultFuture:
        return self.request("OPTIONS", url, opts, callback, **options)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """
        Close the client.

        In-flight requests are cancelled and their futures fulfilled with a
        ``CancelledError``; every pooled connection is closed. A scheduler
        passed to the constructor is left running for its other users.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            tasks = list(self._tasks)

        if self._owns_scheduler:
            self._scheduler.shutdown(on_stop=self._pool.stop, timeout=timeout)
        else:
            for task in tasks:
                task.cancel()
            try:
                self._scheduler.run_on_all(self._pool.stop, timeout)
            except concurrent.futures.TimeoutError:
                logger.warning(f"Connection pool did not stop within {timeout}s")
        logger.debug("HTTP client closed")

    def __enter__(self) -> "HTTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aenter__(self) -> "HTTPClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await asyncio.to_thread(self.close)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<HTTPClient {state} workers={self._scheduler.workers}>"
