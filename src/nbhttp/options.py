"""
Request options.

Turns a method, a URL and an option mapping into an immutable
``RequestDescriptor``. Client defaults are merged under the per-call
options; per-call values win, and header maps are merged name by name.
Invalid options raise ``ValueError`` at submission time.
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import ClientConfig
from .encoding import basic_auth_header, encode_multipart, encode_params
from .http_primitives import (
    Coercion,
    Headers,
    ProxyConfig,
    RequestDescriptor,
    URLComponents,
)
from .redirects import RedirectPolicy
from .streams import RequestStream

logger = logging.getLogger(__name__)

KNOWN_OPTIONS = frozenset({
    "method",
    "url",
    "timeout",
    "connect_timeout",
    "keepalive",
    "basic_auth",
    "oauth_token",
    "headers",
    "query_params",
    "form_params",
    "body",
    "multipart",
    "proxy",
    "insecure",
    "max_redirects",
    "follow_redirects",
    "as",
    "filter",
    "redirect_policy",
    "user_agent",
    "charset",
})

ALIASES = {"as_": "as", "insecure?": "insecure"}


def normalize_key(key: str) -> str:
    key = key.replace("-", "_") if key not in ALIASES else key
    return ALIASES.get(key, key)


def merge_options(*sources: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge option mappings left to right.

    Later sources override earlier ones, except ``headers`` which are merged
    case-insensitively with later values replacing same-named headers.
    """
    merged: Dict[str, Any] = {}
    for source in sources:
        if not source:
            continue
        for raw_key, value in source.items():
            key = normalize_key(raw_key)
            if key == "headers" and merged.get("headers") is not None:
                merged["headers"] = Headers(merged["headers"]).merge(value)
            else:
                merged[key] = value
    return merged


def _optional_ms(options: Mapping[str, Any], name: str, default: Optional[int]) -> Optional[int]:
    value = options.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number of milliseconds")
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return int(value)


def _build_body(options: Mapping[str, Any], headers: Headers):
    provided = [name for name in ("body", "form_params", "multipart") if options.get(name) is not None]
    if len(provided) > 1:
        raise ValueError(f"Only one of body, form_params and multipart may be given, got {provided}")

    if options.get("multipart") is not None:
        body, content_type = encode_multipart(options["multipart"])
        return body, headers.set("Content-Type", content_type)

    if options.get("form_params") is not None:
        body = encode_params(options["form_params"]).encode("ascii")
        return body, headers.set_default("Content-Type", "application/x-www-form-urlencoded")

    body = options.get("body")
    if body is None:
        return None, headers
    if isinstance(body, str):
        return body.encode("utf-8"), headers
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body), headers
    if isinstance(body, RequestStream):
        return body, headers
    if hasattr(body, "__aiter__") or isinstance(body, Iterable):
        return RequestStream(body), headers
    raise ValueError(f"Unsupported body type: {type(body).__name__}")


def build_descriptor(
    method: str,
    url: str,
    options: Optional[Mapping[str, Any]] = None,
    config: Optional[ClientConfig] = None,
) -> RequestDescriptor:
    """
    Build the descriptor for one request.

    Args:
        method: HTTP method
        url: Absolute http(s) URL
        options: Effective (already merged) request options
        config: Client configuration supplying defaults

    Raises:
        ValueError: If the URL or an option is invalid
    """
    config = config or ClientConfig()
    options = merge_options(options)
    method = method.upper()

    components = URLComponents.from_url(url)
    if options.get("query_params"):
        components = components.with_query(encode_params(options["query_params"]))

    headers = Headers(options.get("headers"))
    user_agent = options.get("user_agent", config.user_agent)
    if user_agent:
        headers = headers.set_default("User-Agent", user_agent)
    if config.accept_compressed:
        headers = headers.set_default("Accept-Encoding", "gzip, deflate")

    if options.get("basic_auth") is not None:
        headers = headers.set("Authorization", basic_auth_header(options["basic_auth"]))
    elif options.get("oauth_token"):
        headers = headers.set("Authorization", f"Bearer {options['oauth_token']}")

    body, headers = _build_body(options, headers)

    proxy = options.get("proxy")
    if isinstance(proxy, str):
        proxy = ProxyConfig.from_url(proxy)
    elif proxy is not None and not isinstance(proxy, ProxyConfig):
        raise ValueError("proxy must be a URL string or ProxyConfig")

    body_filter = options.get("filter")
    if body_filter is not None and not callable(body_filter):
        raise ValueError("filter must be callable")

    redirect_policy = options.get("redirect_policy") or config.redirect_policy
    if not isinstance(redirect_policy, RedirectPolicy):
        raise ValueError("redirect_policy must be a RedirectPolicy")

    keepalive = options.get("keepalive", config.keepalive_ms)
    if keepalive is not None and (isinstance(keepalive, bool) or not isinstance(keepalive, (int, float))):
        raise ValueError("keepalive must be a number of milliseconds")

    max_redirects = options.get("max_redirects", config.max_redirects)
    if not isinstance(max_redirects, int) or max_redirects < 0:
        raise ValueError("max_redirects must be a non-negative int")

    extra = sorted(set(options) - KNOWN_OPTIONS)
    if extra:
        logger.debug(f"Echoing unrecognized options {extra}")

    echo = dict(options)
    echo["method"] = method
    echo["url"] = url

    return RequestDescriptor(
        method=method,
        url=components,
        headers=headers,
        body=body,
        timeout_ms=_optional_ms(options, "timeout", config.timeout_ms),
        connect_timeout_ms=_optional_ms(options, "connect_timeout", None),
        keepalive_ms=None if keepalive is None else int(keepalive),
        max_redirects=max_redirects,
        follow_redirects=bool(options.get("follow_redirects", config.follow_redirects)),
        proxy=proxy,
        insecure=bool(options.get("insecure", False)),
        coerce=Coercion.parse(options.get("as", Coercion.AUTO)),
        charset=options.get("charset") or config.default_charset,
        body_filter=body_filter,
        redirect_policy=redirect_policy,
        opts=echo,
    )
