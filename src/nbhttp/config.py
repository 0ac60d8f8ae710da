"""
Client configuration.

``ClientConfig`` holds the client-wide settings and the defaults applied to
every request. Per-call options always override these defaults.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import __version__
from .redirects import DEFAULT_REDIRECT_POLICY, RedirectPolicy


@dataclass(frozen=True)
class ClientConfig:
    """
    Immutable client configuration.

    Attributes:
        worker_threads: Number of event-loop threads
        max_connections_per_host: Pool capacity per key, None for unbounded
        cleanup_interval: Seconds between idle-connection sweeps
        timeout_ms: Default request deadline
        keepalive_ms: Default keep-alive TTL, ``<= 0`` disables reuse
        max_redirects: Default redirect limit
        follow_redirects: Follow redirects by default
        user_agent: Default ``User-Agent`` header, None to omit
        default_charset: Charset for text coercion without a declared one
        redirect_policy: Default redirect rules
        read_chunk_size: Maximum bytes per socket read
        accept_compressed: Advertise gzip/deflate and decode such bodies
        defaults: Default request options merged under every call
    """

    worker_threads: int = 1
    max_connections_per_host: Optional[int] = None
    cleanup_interval: float = 5.0
    timeout_ms: Optional[int] = 60_000
    keepalive_ms: int = 120_000
    max_redirects: int = 10
    follow_redirects: bool = True
    user_agent: Optional[str] = f"nbhttp/{__version__}"
    default_charset: str = "utf-8"
    redirect_policy: RedirectPolicy = DEFAULT_REDIRECT_POLICY
    read_chunk_size: int = 65536
    accept_compressed: bool = True
    defaults: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.worker_threads < 1:
            raise ValueError("worker_threads must be at least 1")
        if self.max_connections_per_host is not None and self.max_connections_per_host < 1:
            raise ValueError("max_connections_per_host must be at least 1")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.max_redirects < 0:
            raise ValueError("max_redirects must be non-negative")
        if self.read_chunk_size < 1:
            raise ValueError("read_chunk_size must be positive")
        if not isinstance(self.defaults, dict):
            raise ValueError("defaults must be a dict")

    def with_defaults(self, **options: Any) -> "ClientConfig":
        """Create a new config with additional default request options."""
        merged = dict(self.defaults)
        merged.update(options)
        return ClientConfig(**{**self.__dict__, "defaults": merged})
