"""
Response body filters.

A body filter is a predicate ``(headers, total_bytes) -> bool``. It is
called once with ``total_bytes == 0`` when the response head arrives and
again after every body chunk with the cumulative decoded size. Returning
``False`` fails the exchange with ``SizeLimitError``.
"""

import logging
from typing import Optional

from .exceptions import SizeLimitError
from .http_primitives import BodyFilter, Headers

logger = logging.getLogger(__name__)


class MaxBodyFilter:
    """Reject responses whose body is, or announces to be, larger than ``limit``."""

    def __init__(self, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self.limit = limit

    def __call__(self, headers: Headers, total_bytes: int) -> bool:
        if total_bytes == 0:
            declared = headers.get("content-length")
            if declared is not None and declared.strip().isdigit():
                return int(declared) <= self.limit
        return total_bytes <= self.limit

    def __repr__(self) -> str:
        return f"MaxBodyFilter(limit={self.limit})"


def max_body_filter(limit: int) -> MaxBodyFilter:
    """Create a filter rejecting bodies larger than ``limit`` bytes."""
    return MaxBodyFilter(limit)


def check_body(body_filter: Optional[BodyFilter], headers: Headers, total_bytes: int) -> None:
    """
    Evaluate ``body_filter`` and raise when it rejects.

    Raises:
        SizeLimitError: If the filter returns a falsy value
    """
    if body_filter is None:
        return
    if not body_filter(headers, total_bytes):
        limit = getattr(body_filter, "limit", None)
        logger.debug(f"Body filter {body_filter!r} rejected response at {total_bytes} bytes")
        raise SizeLimitError(f"response body rejected after {total_bytes} bytes", limit=limit)
