"""
Per-exchange deadline timer.

The timer is armed when an exchange starts and cancelled exactly when the
exchange reaches a terminal state through normal means, so a late expiry
can never touch a finished exchange.
"""

import asyncio
import logging
from typing import Callable, Optional

from .exceptions import TimeoutError

logger = logging.getLogger(__name__)


class TimeoutManager:
    """Deadline covering connection acquisition plus the response read."""

    def __init__(
        self,
        timeout_ms: Optional[int],
        on_expire: Callable[[TimeoutError], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._timeout_ms = timeout_ms
        self._on_expire = on_expire
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._deadline: Optional[float] = None
        self._expired = False

    def start(self) -> None:
        """Arm the timer. A ``None`` timeout means no deadline."""
        if self._timeout_ms is None or self._handle is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        delay = self._timeout_ms / 1000.0
        self._deadline = loop.time() + delay
        self._handle = loop.call_later(delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline."""
        if self._deadline is None or self._loop is None:
            return None
        return max(0.0, self._deadline - self._loop.time())

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def timeout_seconds(self) -> Optional[float]:
        return None if self._timeout_ms is None else self._timeout_ms / 1000.0

    def _fire(self) -> None:
        self._handle = None
        self._expired = True
        logger.debug(f"Deadline of {self._timeout_ms}ms expired")
        self._on_expire(TimeoutError("request deadline exceeded", self.timeout_seconds))
