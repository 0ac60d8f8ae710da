"""
Response faking for tests.

``FakeResponses`` plugs into the connection pool's interception seam and
serves canned responses as real HTTP/1.1 bytes from a ``MockNetworkStream``.
The response still goes through the parser, decoding, coercion, redirect
and body filter code, only the socket is replaced.

Example::

    with HTTPClient() as client, FakeResponses(client) as fake:
        fake.add("GET", "http://api.test/users", body={"users": []})
        result = client.get("http://api.test/users").result()
"""

import json
import logging
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .connection_pool import ConnectionPool
from .exceptions import ConnectError
from .http_primitives import ConnectionKey, Headers, RequestDescriptor
from .network.mock import MockNetworkStream

logger = logging.getLogger(__name__)

Responder = Callable[[RequestDescriptor], Tuple[int, Mapping[str, str], Any]]


@dataclass
class FakeResponse:
    """A canned response; ``times=None`` serves it indefinitely."""
    status: int = 200
    headers: Optional[Mapping[str, str]] = None
    body: Any = b""
    delay: float = 0.0
    times: Optional[int] = None
    responder: Optional[Responder] = None


def _encode_body(body: Any, headers: Headers) -> Tuple[bytes, Headers]:
    if body is None:
        return b"", headers
    if isinstance(body, bytes):
        return body, headers
    if isinstance(body, str):
        return body.encode("utf-8"), headers.set_default("Content-Type", "text/plain; charset=utf-8")
    return json.dumps(body).encode("utf-8"), headers.set_default("Content-Type", "application/json")


def serialize_response(
    status: int,
    headers: Optional[Mapping[str, str]] = None,
    body: Any = b"",
    method: str = "GET",
) -> bytes:
    """Render a complete HTTP/1.1 response."""
    payload, merged = _encode_body(body, Headers(headers))
    if "Transfer-Encoding" not in merged:
        merged = merged.set_default("Content-Length", str(len(payload)))

    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = ""

    lines = [f"HTTP/1.1 {status} {reason}".rstrip().encode("ascii")]
    lines.extend(name + b": " + value for name, value in merged.raw())
    head = b"\r\n".join(lines) + b"\r\n\r\n"
    # Responses to HEAD carry the headers of the GET without its body.
    if method.upper() == "HEAD" or status in (204, 304):
        return head
    return head + payload


class FakeResponses:
    """
    Canned responses keyed by method and URL.

    Args:
        target: An ``HTTPClient`` or a ``ConnectionPool``
        passthrough: Let unmatched requests reach the network. When False
            they fail with ``ConnectError``.
    """

    def __init__(self, target: Any, passthrough: bool = True) -> None:
        self._pool: ConnectionPool = getattr(target, "pool", target)
        self.passthrough = passthrough
        self._lock = threading.Lock()
        self._routes: Dict[Tuple[str, str], List[FakeResponse]] = {}
        self._calls: List[RequestDescriptor] = []
        self._installed = False

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = b"",
        delay: float = 0.0,
        times: Optional[int] = None,
    ) -> "FakeResponses":
        """
        Register a response for ``method url``.

        ``body`` may be bytes, text or any JSON-serializable value. Responses
        registered for the same route are served in order; one with
        ``times=None`` keeps answering once reached.
        """
        return self._register(method, url, FakeResponse(status, headers, body, delay, times))

    def add_callback(self, method: str, url: str, responder: Responder, delay: float = 0.0) -> "FakeResponses":
        """Register a function building ``(status, headers, body)`` from the request."""
        return self._register(method, url, FakeResponse(delay=delay, responder=responder))

    def _register(self, method: str, url: str, response: FakeResponse) -> "FakeResponses":
        with self._lock:
            self._routes.setdefault((method.upper(), url), []).append(response)
        return self

    @property
    def calls(self) -> List[RequestDescriptor]:
        """Descriptors of the requests served so far."""
        with self._lock:
            return list(self._calls)

    def reset(self) -> None:
        with self._lock:
            self._routes.clear()
            self._calls.clear()

    def install(self) -> None:
        if not self._installed:
            self._pool.add_interceptor(self._intercept)
            self._installed = True

    def uninstall(self) -> None:
        if self._installed:
            self._pool.remove_interceptor(self._intercept)
            self._installed = False

    def _match(self, descriptor: RequestDescriptor) -> Optional[FakeResponse]:
        url = descriptor.url.geturl()
        candidates = [(descriptor.method, url), (descriptor.method, url.split("?", 1)[0])]
        with self._lock:
            for route in candidates:
                responses = self._routes.get(route)
                if not responses:
                    continue
                response = responses[0]
                if response.times is not None:
                    response.times -= 1
                    if response.times <= 0:
                        responses.pop(0)
                self._calls.append(descriptor)
                return response
        return None

    def _intercept(self, key: ConnectionKey, descriptor: Optional[RequestDescriptor]) -> Optional[MockNetworkStream]:
        if descriptor is None:
            return None

        response = self._match(descriptor)
        if response is None:
            if self.passthrough:
                return None
            raise ConnectError(f"No fake response registered for {descriptor.method} {descriptor.url}")

        if response.responder is not None:
            status, headers, body = response.responder(descriptor)
        else:
            status, headers, body = response.status, response.headers, response.body

        logger.debug(f"Serving fake {status} for {descriptor.method} {descriptor.url}")
        data = serialize_response(status, headers, body, descriptor.method)
        return MockNetworkStream(data, read_delay=response.delay)

    def __enter__(self) -> "FakeResponses":
        self.install()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.uninstall()
