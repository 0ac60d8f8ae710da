"""
nbhttp - Non-blocking HTTP/1.1 client

Requests return a ResultFuture immediately; the exchange runs on a pool of
event-loop threads over pooled keep-alive connections. Failures are
reported in the result, never raised to the caller.
"""

__version__ = "0.1.0"
__author__ = "Developer"
__email__ = "dev@example.com"

# Import main components for easy access
from .client import HTTPClient
from .config import ClientConfig
from .connection_pool import ConnectionPool
from .exceptions import (
    CancelledError,
    ConnectError,
    HTTPClientError,
    ProtocolError,
    RedirectLimitError,
    SizeLimitError,
    StreamError,
    TimeoutError,
)
from .exchange import Exchange, ExchangeState
from .filters import MaxBodyFilter, max_body_filter
from .future import ResultFuture
from .http11 import ConnectionState, HTTP11Connection
from .http_primitives import (
    Coercion,
    ConnectionKey,
    Headers,
    ProxyConfig,
    RequestDescriptor,
    ResponseResult,
    URLComponents,
)
from .redirects import RedirectPolicy
from .scheduler import EventLoopScheduler
from .streams import RequestStream, ResponseStream, read_stream_to_bytes
from .timeouts import TimeoutManager

__all__ = [
    "HTTPClient",
    "ClientConfig",
    "ConnectionPool",
    "HTTPClientError",
    "ConnectError",
    "ProtocolError",
    "TimeoutError",
    "SizeLimitError",
    "RedirectLimitError",
    "CancelledError",
    "StreamError",
    "Exchange",
    "ExchangeState",
    "MaxBodyFilter",
    "max_body_filter",
    "ResultFuture",
    "HTTP11Connection",
    "ConnectionState",
    "Coercion",
    "ConnectionKey",
    "Headers",
    "ProxyConfig",
    "RequestDescriptor",
    "ResponseResult",
    "URLComponents",
    "RedirectPolicy",
    "EventLoopScheduler",
    "RequestStream",
    "ResponseStream",
    "read_stream_to_bytes",
    "TimeoutManager",
]
