"""
Custom exceptions for nbhttp.

This module defines the exception hierarchy used throughout the client.
Transport failures are never raised across the asynchronous boundary: the
pipeline converts them into the ``error`` field of a ``ResponseResult``.
"""

from typing import Optional, Sequence


class HTTPClientError(Exception):
    """Base exception for all nbhttp errors."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConnectError(HTTPClientError):
    """Raised when DNS resolution, TCP connect or the TLS handshake fails."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(f"Connection error: {message}", cause)


class ProtocolError(HTTPClientError):
    """Raised on a malformed status line, header block or body framing."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(f"Protocol error: {message}", cause)


class TimeoutError(HTTPClientError):
    """Raised when a request deadline is exceeded at any stage."""

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        if timeout is not None:
            message = f"{message} (timeout: {timeout}s)"
        super().__init__(f"Timeout error: {message}")
        self.timeout = timeout


class SizeLimitError(HTTPClientError):
    """Raised when the body size filter rejects a response."""

    def __init__(self, message: str, limit: Optional[int] = None) -> None:
        if limit is not None:
            message = f"{message} (limit: {limit} bytes)"
        super().__init__(f"Size limit error: {message}")
        self.limit = limit


class RedirectLimitError(HTTPClientError):
    """Raised when a request follows more redirects than allowed."""

    def __init__(self, max_redirects: int, history: Sequence[str] = ()) -> None:
        super().__init__(
            f"Redirect limit error: exceeded {max_redirects} redirects"
        )
        self.max_redirects = max_redirects
        self.history = tuple(history)


class CancelledError(HTTPClientError):
    """Raised when a request is cancelled by the caller or on shutdown."""

    def __init__(self, message: str = "Request cancelled") -> None:
        super().__init__(f"Cancelled: {message}")


class StreamError(HTTPClientError):
    """Raised when there's an error with body stream operations."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(f"Stream error: {message}", cause)
