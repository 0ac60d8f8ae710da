"""
Single-assignment result cell for one logical request.

``ResultFuture`` is fulfilled exactly once, on success or failure. It can
be consumed synchronously (``result()`` blocks the calling thread), through
continuations (``add_done_callback``) or by awaiting it from any asyncio
event loop. Continuations registered after fulfilment run immediately, so
no notification is ever missed.
"""

import asyncio
import logging
import threading
from typing import Callable, List, Optional

from .exceptions import CancelledError
from .http_primitives import ResponseResult

logger = logging.getLogger(__name__)

Continuation = Callable[[ResponseResult], object]


class ResultFuture:
    """
    One-shot result cell with a guarded continuation list.

    The completion flag and the continuation list are protected by one lock;
    continuations are drained outside of it, exactly once each.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._done = False
        self._result: Optional[ResponseResult] = None
        self._callbacks: List[Continuation] = []
        self._cancel_hook: Optional[Callable[[CancelledError], None]] = None
        self._cancel_requested = False

    def set_result(self, result: ResponseResult) -> bool:
        """
        Fulfil the future.

        Returns:
            True if this call fulfilled it, False if it was already fulfilled
        """
        with self._lock:
            if self._done:
                return False
            self._done = True
            self._result = result
            self._cancel_hook = None
            callbacks, self._callbacks = self._callbacks, []
        self._event.set()

        for callback in callbacks:
            self._invoke(callback, result)
        return True

    def add_done_callback(self, callback: Continuation) -> None:
        """Register a continuation, invoked exactly once with the result."""
        with self._lock:
            if not self._done:
                self._callbacks.append(callback)
                return
            result = self._result
        self._invoke(callback, result)

    def result(self, timeout: Optional[float] = None) -> ResponseResult:
        """
        Block until fulfilled and return the result.

        Request failures are reported in ``ResponseResult.error``; this only
        raises the builtin ``TimeoutError`` when the wait itself times out.
        """
        if not self._event.wait(timeout):
            raise TimeoutError(f"Result not available after {timeout}s")
        assert self._result is not None
        return self._result

    def done(self) -> bool:
        return self._done

    def cancelled(self) -> bool:
        """True only when the future was fulfilled with a ``CancelledError``."""
        result = self._result
        return self._done and result is not None and isinstance(result.error, CancelledError)

    def cancel(self, message: str = "Request cancelled by caller") -> bool:
        """
        Cancel the request.

        The in-flight exchange is cancelled cooperatively and the future is
        fulfilled with a ``CancelledError``, unless the exchange completes
        first. Returns False if it was already fulfilled; check ``cancelled()``
        for the outcome.
        """
        error = CancelledError(message)
        with self._lock:
            if self._done:
                return False
            self._cancel_requested = True
            hook = self._cancel_hook
        if hook is not None:
            hook(error)
        else:
            self.set_result(ResponseResult.failure(error))
        return True

    def set_cancel_hook(self, hook: Optional[Callable[[CancelledError], None]]) -> None:
        """Route ``cancel()`` to the exchange currently serving this future."""
        with self._lock:
            if self._done:
                return
            self._cancel_hook = hook
            pending = self._cancel_requested
        if pending and hook is not None:
            hook(CancelledError("Request cancelled by caller"))

    def __await__(self):
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def _wake(result: ResponseResult) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, result)

        def _resolve(result: ResponseResult) -> None:
            if not waiter.done():
                waiter.set_result(result)

        self.add_done_callback(_wake)
        return waiter.__await__()

    @staticmethod
    def _invoke(callback: Continuation, result: Optional[ResponseResult]) -> None:
        try:
            callback(result)
        except Exception:
            logger.exception(f"Error in result callback {callback!r}")

    def __repr__(self) -> str:
        state = "done" if self._done else "pending"
        return f"<ResultFuture {state}>"
