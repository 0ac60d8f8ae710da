"""
Response body coercion.

Converts a fully read body into the representation the caller asked for.
``auto`` decodes textual media types and leaves everything else as bytes.
"""

import codecs
import logging
from typing import Optional, Tuple, Union

from .http_primitives import Coercion, Headers

logger = logging.getLogger(__name__)

DEFAULT_CHARSET = "utf-8"

TEXTUAL_APPLICATION_TYPES = frozenset({
    "application/json",
    "application/xml",
    "application/javascript",
    "application/ecmascript",
    "application/x-javascript",
    "application/x-www-form-urlencoded",
    "application/xhtml+xml",
    "application/ld+json",
    "application/problem+json",
    "application/graphql",
    "application/yaml",
    "application/x-yaml",
})


def parse_content_type(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a Content-Type header into media type and charset.

    Returns:
        Tuple of (lower-cased media type or None, charset or None)
    """
    if not value:
        return None, None
    media_type, _, params = value.partition(";")
    charset = None
    for param in params.split(";"):
        name, _, param_value = param.strip().partition("=")
        if name.lower() == "charset" and param_value:
            charset = param_value.strip().strip('"').strip("'") or None
    return media_type.strip().lower() or None, charset


def is_textual(media_type: Optional[str]) -> bool:
    if not media_type:
        return False
    if media_type.startswith("text/"):
        return True
    if media_type.endswith("+json") or media_type.endswith("+xml"):
        return True
    return media_type in TEXTUAL_APPLICATION_TYPES


def resolve_charset(charset: Optional[str], default: str = DEFAULT_CHARSET) -> str:
    if charset:
        try:
            return codecs.lookup(charset).name
        except LookupError:
            logger.warning(f"Unknown charset {charset!r}, falling back to {default}")
    return default


def decode_text(body: bytes, headers: Headers, default_charset: str = DEFAULT_CHARSET) -> str:
    _, charset = parse_content_type(headers.get("content-type"))
    return body.decode(resolve_charset(charset, default_charset), errors="replace")


def coerce_body(
    body: bytes,
    headers: Headers,
    mode: Coercion,
    default_charset: str = DEFAULT_CHARSET,
) -> Union[bytes, str]:
    """
    Coerce a materialized body.

    ``STREAM`` is handled by the pipeline and never reaches this function.
    """
    if mode is Coercion.BYTES:
        return body
    if mode is Coercion.TEXT:
        return decode_text(body, headers, default_charset)
    if mode is Coercion.AUTO:
        media_type, charset = parse_content_type(headers.get("content-type"))
        if is_textual(media_type) or (media_type is None and charset):
            return body.decode(resolve_charset(charset, default_charset), errors="replace")
        return body
    raise ValueError(f"Cannot coerce a materialized body to {mode.value}")
