"""
HTTP primitives for nbhttp.

This module defines the core data structures for requests and responses.
All classes are immutable to ensure thread safety and simplify reasoning:
a descriptor handed to the pipeline is never modified, redirects build
new instances instead.
"""

import base64
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Tuple,
    Union,
    TYPE_CHECKING,
)
from urllib.parse import urlsplit, urlunsplit, unquote

if TYPE_CHECKING:
    from .exceptions import HTTPClientError
    from .redirects import RedirectPolicy
    from .streams import RequestStream


HeaderItems = Iterable[Tuple[Union[str, bytes], Union[str, bytes]]]
BodyFilter = Callable[["Headers", int], bool]

DEFAULT_PORTS = {"http": 80, "https": 443}

# Sentinel meaning "use the pool default" for keepalive_ms.
KEEPALIVE_DEFAULT: Optional[int] = None


def _to_str(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        return value.decode("latin-1")
    return str(value)


class Headers:
    """
    Ordered, case-insensitive header multimap.

    Original name casing is preserved for the wire, lookups ignore case.
    Instances are immutable; mutators return a new ``Headers``.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Optional[Union[HeaderItems, Mapping[str, Any]]] = None) -> None:
        if items is None:
            pairs: List[Tuple[str, str]] = []
        elif isinstance(items, Headers):
            pairs = list(items._items)
        elif isinstance(items, Mapping):
            pairs = []
            for name, value in items.items():
                if isinstance(value, (list, tuple)):
                    pairs.extend((_to_str(name), _to_str(v)) for v in value)
                else:
                    pairs.append((_to_str(name), _to_str(value)))
        else:
            pairs = [(_to_str(name), _to_str(value)) for name, value in items]
        self._items: Tuple[Tuple[str, str], ...] = tuple(pairs)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get the first value for ``name`` (case-insensitive)."""
        name_lower = name.lower()
        for header_name, header_value in self._items:
            if header_name.lower() == name_lower:
                return header_value
        return default

    def get_all(self, name: str) -> List[str]:
        name_lower = name.lower()
        return [v for n, v in self._items if n.lower() == name_lower]

    def add(self, name: str, value: Union[str, bytes]) -> "Headers":
        """Return new headers with ``name: value`` appended."""
        return Headers(self._items + ((name, _to_str(value)),))

    def set(self, name: str, value: Union[str, bytes]) -> "Headers":
        """Return new headers where ``name`` has exactly one value."""
        return self.remove(name).add(name, value)

    def set_default(self, name: str, value: Union[str, bytes]) -> "Headers":
        if name in self:
            return self
        return self.add(name, value)

    def remove(self, *names: str) -> "Headers":
        lowered = {n.lower() for n in names}
        return Headers(p for p in self._items if p[0].lower() not in lowered)

    def merge(self, other: Optional[Union[HeaderItems, Mapping[str, Any]]]) -> "Headers":
        """Return new headers where every name present in ``other`` is replaced."""
        other = Headers(other)
        if not other:
            return self
        base = self.remove(*{name for name, _ in other.items()})
        return Headers(base._items + other._items)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._items)

    def raw(self) -> List[Tuple[bytes, bytes]]:
        """Headers as ``(bytes, bytes)`` pairs for the wire."""
        return [(n.encode("latin-1"), v.encode("latin-1")) for n, v in self._items]

    def to_dict(self) -> Dict[str, str]:
        """Lower-cased names, repeated headers joined with a comma."""
        result: Dict[str, str] = {}
        for name, value in self._items:
            key = name.lower()
            result[key] = f"{result[key]}, {value}" if key in result else value
        return result

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self.get(name) is not None

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Headers):
            return [(n.lower(), v) for n, v in self._items] == [
                (n.lower(), v) for n, v in other._items
            ]
        return NotImplemented

    def __repr__(self) -> str:
        return f"Headers({list(self._items)!r})"


class URLComponents(NamedTuple):
    """Immutable representation of an absolute http(s) URL."""
    scheme: str
    host: str
    port: int
    target: str  # path + query, origin-form

    @classmethod
    def from_url(cls, url: str) -> "URLComponents":
        """Create URLComponents from a URL string."""
        parsed = urlsplit(url)
        scheme = (parsed.scheme or "http").lower()
        if scheme not in DEFAULT_PORTS:
            raise ValueError(f"Unsupported URL scheme: {scheme!r}")
        host = parsed.hostname
        if not host:
            raise ValueError(f"No hostname found in URL: {url!r}")
        try:
            port = parsed.port or DEFAULT_PORTS[scheme]
        except ValueError as e:
            raise ValueError(f"Invalid port in URL: {url!r}") from e

        target = parsed.path or "/"
        if parsed.query:
            target += "?" + parsed.query
        return cls(scheme=scheme, host=host, port=port, target=target)

    @property
    def default_port(self) -> bool:
        return DEFAULT_PORTS[self.scheme] == self.port

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return host if self.default_port else f"{host}:{self.port}"

    @property
    def origin(self) -> Tuple[str, str, int]:
        return (self.scheme, self.host, self.port)

    def with_query(self, query: str) -> "URLComponents":
        """Append an already-encoded query string."""
        if not query:
            return self
        separator = "&" if "?" in self.target else "?"
        return self._replace(target=f"{self.target}{separator}{query}")

    def geturl(self) -> str:
        return f"{self.scheme}://{self.netloc}{self.target}"

    def __str__(self) -> str:
        return self.geturl()


class ProxyConfig(NamedTuple):
    """Proxy target, optionally carrying credentials."""
    scheme: str
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_url(cls, url: str) -> "ProxyConfig":
        parsed = urlsplit(url if "://" in url else f"http://{url}")
        if not parsed.hostname:
            raise ValueError(f"No hostname found in proxy URL: {url!r}")
        scheme = parsed.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise ValueError(f"Unsupported proxy scheme: {scheme!r}")
        return cls(
            scheme=scheme,
            host=parsed.hostname,
            port=parsed.port or DEFAULT_PORTS[scheme],
            username=unquote(parsed.username) if parsed.username else None,
            password=unquote(parsed.password) if parsed.password else None,
        )

    @property
    def authorization(self) -> Optional[str]:
        """Value for a ``Proxy-Authorization`` header, if credentials are set."""
        if self.username is None:
            return None
        raw = f"{self.username}:{self.password or ''}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def geturl(self) -> str:
        return urlunsplit((self.scheme, f"{self.host}:{self.port}", "", "", ""))


class ConnectionKey(NamedTuple):
    """
    Identifies a pool bucket.

    Direct and proxied connections never mix, and neither do TLS
    connections established with and without certificate verification.
    """
    scheme: str
    host: str
    port: int
    proxy: Optional[ProxyConfig] = None
    insecure: bool = False

    def __str__(self) -> str:
        base = f"{self.scheme}://{self.host}:{self.port}"
        if self.insecure:
            base += " (insecure)"
        if self.proxy is not None:
            return f"{base} via {self.proxy.host}:{self.proxy.port}"
        return base


class Coercion(Enum):
    """Representation the response body is delivered in."""
    STREAM = "stream"
    BYTES = "bytes"
    TEXT = "text"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: Union[str, "Coercion"]) -> "Coercion":
        if isinstance(value, Coercion):
            return value
        normalized = str(value).lower().lstrip(":").replace("_", "-")
        if normalized in ("byte-array", "byte"):
            normalized = "bytes"
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown output coercion: {value!r}") from None


@dataclass(frozen=True)
class RequestDescriptor:
    """
    Immutable description of one logical HTTP request.

    Built once per call by ``options.build_descriptor``. The pipeline
    never modifies it; a redirect produces a new descriptor with
    ``dataclasses.replace``.
    """

    method: str
    url: URLComponents
    headers: Headers = field(default_factory=Headers)
    body: Optional[Union[bytes, "RequestStream"]] = None
    timeout_ms: Optional[int] = 60_000
    connect_timeout_ms: Optional[int] = None
    keepalive_ms: Optional[int] = KEEPALIVE_DEFAULT
    max_redirects: int = 10
    follow_redirects: bool = True
    proxy: Optional[ProxyConfig] = None
    insecure: bool = False
    coerce: Coercion = Coercion.AUTO
    charset: str = "utf-8"
    body_filter: Optional[BodyFilter] = None
    redirect_policy: Optional["RedirectPolicy"] = None
    opts: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate descriptor data after initialization."""
        if not isinstance(self.method, str) or not self.method:
            raise ValueError("method must be a non-empty str")
        if not isinstance(self.url, URLComponents):
            raise ValueError("url must be URLComponents")
        if not isinstance(self.headers, Headers):
            raise ValueError("headers must be Headers")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.max_redirects < 0:
            raise ValueError("max_redirects must be non-negative")

    @property
    def key(self) -> ConnectionKey:
        return ConnectionKey(
            self.url.scheme,
            self.url.host,
            self.url.port,
            self.proxy,
            self.insecure and self.url.scheme == "https",
        )

    @property
    def target(self) -> str:
        """Request-line target: absolute-form through a plain HTTP proxy."""
        if self.proxy is not None and self.url.scheme == "http":
            return self.url.geturl()
        return self.url.target

    @property
    def replayable(self) -> bool:
        """Whether the body can be sent again (retry or redirect)."""
        return self.body is None or isinstance(self.body, bytes)

    def with_url(self, url: Union[str, URLComponents]) -> "RequestDescriptor":
        if isinstance(url, str):
            url = URLComponents.from_url(url)
        return replace(self, url=url)

    def with_method(self, method: str) -> "RequestDescriptor":
        return replace(self, method=method.upper())

    def with_headers(self, headers: Headers) -> "RequestDescriptor":
        return replace(self, headers=headers)

    def with_body(self, body: Optional[Union[bytes, "RequestStream"]]) -> "RequestDescriptor":
        return replace(self, body=body)


@dataclass(frozen=True)
class ResponseResult:
    """
    Outcome of one logical request.

    Exactly one of ``body``/``error`` is meaningful: check ``error`` first.
    ``opts`` echoes the effective request options, caller-supplied extra
    keys included, for correlation in callbacks. ``history`` lists the
    URLs visited before ``url`` while following redirects.
    """

    status: Optional[int]
    headers: Headers = field(default_factory=Headers)
    body: Any = None
    error: Optional["HTTPClientError"] = None
    opts: Mapping[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    history: Tuple[str, ...] = ()

    @classmethod
    def failure(
        cls,
        error: "HTTPClientError",
        opts: Optional[Mapping[str, Any]] = None,
        url: Optional[str] = None,
        history: Tuple[str, ...] = (),
    ) -> "ResponseResult":
        return cls(status=None, error=error, opts=opts or {}, url=url, history=history)

    @property
    def ok(self) -> bool:
        return self.error is None

    def get_header(self, name: str) -> Optional[str]:
        """Get a header value by name (case-insensitive)."""
        return self.headers.get(name)
