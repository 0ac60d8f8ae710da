"""
Unit tests for custom exceptions.

Tests the exception hierarchy to ensure proper error handling
and cause tracking.
"""

import pytest

from nbhttp.exceptions import (
    CancelledError,
    ConnectError,
    HTTPClientError,
    ProtocolError,
    RedirectLimitError,
    SizeLimitError,
    StreamError,
    TimeoutError,
)


class TestHTTPClientError:
    """Test base HTTPClientError class."""

    def test_basic_creation(self) -> None:
        """Test creating basic HTTPClientError."""
        error = HTTPClientError("Test error message")
        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.cause is None

    def test_with_cause(self) -> None:
        """Test creating HTTPClientError with cause."""
        original_error = ValueError("Original error")
        error = HTTPClientError("Test error message", cause=original_error)
        assert error.message == "Test error message"
        assert error.cause is original_error


class TestConnectError:
    """Test ConnectError class."""

    def test_basic_creation(self) -> None:
        error = ConnectError("Connection failed")
        assert error.message == "Connection error: Connection failed"
        assert error.cause is None

    def test_with_cause(self) -> None:
        original_error = OSError("Network unreachable")
        error = ConnectError("Connection failed", cause=original_error)
        assert "Connection error: Connection failed" in str(error)
        assert error.cause is original_error


class TestProtocolError:
    """Test ProtocolError class."""

    def test_basic_creation(self) -> None:
        error = ProtocolError("Invalid status line")
        assert error.message == "Protocol error: Invalid status line"


class TestTimeoutError:
    """Test TimeoutError class."""

    def test_with_timeout(self) -> None:
        error = TimeoutError("request deadline exceeded", 0.05)
        assert error.timeout == 0.05
        assert "Timeout error: request deadline exceeded" in str(error)
        assert "0.05s" in str(error)

    def test_without_timeout(self) -> None:
        error = TimeoutError("read timed out")
        assert error.timeout is None
        assert str(error) == "Timeout error: read timed out"

    def test_does_not_shadow_builtin_hierarchy(self) -> None:
        """The library TimeoutError is an HTTPClientError, not an OSError."""
        error = TimeoutError("x")
        assert isinstance(error, HTTPClientError)
        assert not isinstance(error, OSError)


class TestSizeLimitError:
    """Test SizeLimitError class."""

    def test_with_limit(self) -> None:
        error = SizeLimitError("response body rejected", limit=1024)
        assert error.limit == 1024
        assert "1024 bytes" in str(error)


class TestRedirectLimitError:
    """Test RedirectLimitError class."""

    def test_history_is_tuple(self) -> None:
        error = RedirectLimitError(2, ["http://a/", "http://b/"])
        assert error.max_redirects == 2
        assert error.history == ("http://a/", "http://b/")
        assert str(error) == "Redirect limit error: exceeded 2 redirects"


class TestCancelledError:
    """Test CancelledError class."""

    def test_default_message(self) -> None:
        error = CancelledError()
        assert error.message == "Cancelled: Request cancelled"

    def test_custom_message(self) -> None:
        error = CancelledError("Client is closed")
        assert error.message == "Cancelled: Client is closed"


class TestStreamError:
    """Test StreamError class."""

    def test_basic_creation(self) -> None:
        error = StreamError("Stream closed")
        assert error.message == "Stream error: Stream closed"


class TestExceptionHierarchy:
    """Test exception inheritance."""

    @pytest.mark.parametrize("error", [
        ConnectError("x"),
        ProtocolError("x"),
        TimeoutError("x"),
        SizeLimitError("x"),
        RedirectLimitError(1),
        CancelledError(),
        StreamError("x"),
    ])
    def test_all_derive_from_base(self, error) -> None:
        assert isinstance(error, HTTPClientError)
        assert isinstance(error, Exception)

    def test_catch_by_base(self) -> None:
        with pytest.raises(HTTPClientError):
            raise ProtocolError("bad framing")
