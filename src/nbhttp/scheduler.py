"""
Event-loop scheduler.

A fixed set of daemon threads, each running its own asyncio event loop.
Every connection key is served by exactly one loop, so a pool bucket is
only ever touched from a single thread.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, TypeVar

from .http_primitives import ConnectionKey

logger = logging.getLogger(__name__)

T = TypeVar("T")

LoopHook = Callable[[], Awaitable[Any]]


class EventLoopScheduler:
    """
    Runs coroutines on a fixed pool of event-loop threads.

    Args:
        workers: Number of loop threads
        name: Thread name prefix
    """

    def __init__(self, workers: int = 1, name: str = "nbhttp") -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._workers = workers
        self._name = name
        self._loops: List[asyncio.AbstractEventLoop] = []
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

    def start(self, on_start: Optional[LoopHook] = None, timeout: float = 5.0) -> None:
        """
        Start the loop threads.

        ``on_start`` is awaited once on every loop before this returns; it is
        where per-loop housekeeping such as the pool sweep is started.
        """
        with self._lock:
            if self._stopped:
                raise RuntimeError("Scheduler has been shut down")
            if self._started:
                return
            self._started = True

            for index in range(self._workers):
                loop = asyncio.new_event_loop()
                ready = threading.Event()
                thread = threading.Thread(
                    target=self._run,
                    args=(loop, ready),
                    name=f"{self._name}-loop-{index}",
                    daemon=True,
                )
                thread.start()
                ready.wait()
                self._loops.append(loop)
                self._threads.append(thread)

        logger.debug(f"Started {self._workers} event loop thread(s)")
        if on_start is not None:
            self.run_on_all(on_start, timeout)

    @staticmethod
    def _run(loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()

    def loop_for(self, key: ConnectionKey) -> asyncio.AbstractEventLoop:
        """Return the loop that owns ``key``."""
        if not self._loops:
            raise RuntimeError("Scheduler is not running")
        return self._loops[hash(key) % len(self._loops)]

    def submit(self, coro: Coroutine[Any, Any, T], key: ConnectionKey) -> "concurrent.futures.Future[T]":
        """Schedule ``coro`` on the loop owning ``key``."""
        if self._stopped:
            coro.close()
            raise RuntimeError("Scheduler has been shut down")
        return asyncio.run_coroutine_threadsafe(coro, self.loop_for(key))

    def call_soon(self, key: ConnectionKey, callback: Callable[..., Any], *args: Any) -> None:
        self.loop_for(key).call_soon_threadsafe(callback, *args)

    def run_on_all(self, hook: LoopHook, timeout: Optional[float] = None) -> List[Any]:
        """Await ``hook()`` on every loop and return the results."""
        futures = [asyncio.run_coroutine_threadsafe(self._call(hook), loop) for loop in self._loops]
        return [future.result(timeout) for future in futures]

    @staticmethod
    async def _call(hook: LoopHook) -> Any:
        return await hook()

    def shutdown(self, on_stop: Optional[LoopHook] = None, timeout: Optional[float] = 5.0) -> None:
        """
        Cancel outstanding work, run ``on_stop`` on every loop, then stop
        the loops and join their threads.
        """
        if threading.current_thread() in self._threads:
            raise RuntimeError("Cannot shut down the scheduler from one of its own loops")

        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            loops, threads = list(self._loops), list(self._threads)

        for loop in loops:
            future = asyncio.run_coroutine_threadsafe(self._drain(on_stop), loop)
            try:
                future.result(timeout)
            except concurrent.futures.TimeoutError:
                logger.warning(f"Event loop did not drain within {timeout}s")
            except Exception as e:
                logger.error(f"Error while draining event loop: {e}")
            loop.call_soon_threadsafe(loop.stop)

        for thread in threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop within {timeout}s")

        self._loops.clear()
        self._threads.clear()
        logger.debug("Scheduler shut down")

    @staticmethod
    async def _drain(on_stop: Optional[LoopHook]) -> None:
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if on_stop is not None:
            await on_stop()

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    @property
    def loops(self) -> List[asyncio.AbstractEventLoop]:
        return list(self._loops)
