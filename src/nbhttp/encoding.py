"""
Request argument encoding.

Query/form parameter encoding (nested maps use bracket notation, so
``{"a": {"b": {"c": 5}}}`` becomes ``a[b][c]=5``), multipart/form-data
bodies and the basic-auth header value.
"""

import base64
import mimetypes
import os
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote_plus


ParamPairs = List[Tuple[str, str]]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def flatten_params(params: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]], prefix: str = "") -> ParamPairs:
    """
    Flatten nested parameters into ``(key, value)`` string pairs.

    Nested mappings extend the key with ``[child]``; lists and tuples repeat
    the key once per element; ``None`` values are skipped.
    """
    pairs: ParamPairs = []
    items = params.items() if isinstance(params, Mapping) else params
    for name, value in items:
        key = f"{prefix}[{name}]" if prefix else str(name)
        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(flatten_params(value, key))
        elif isinstance(value, (list, tuple, set, frozenset)):
            for element in value:
                if isinstance(element, Mapping):
                    pairs.extend(flatten_params(element, key))
                elif element is not None:
                    pairs.append((key, _format_value(element)))
        else:
            pairs.append((key, _format_value(value)))
    return pairs


def encode_params(params: Union[Mapping[str, Any], Iterable[Tuple[str, Any]], None]) -> str:
    """Encode parameters as ``application/x-www-form-urlencoded``."""
    if not params:
        return ""
    return "&".join(
        f"{quote_plus(key, safe='[]')}={quote_plus(value)}"
        for key, value in flatten_params(params)
    )


def basic_auth_header(credentials: Union[str, Tuple[str, str], List[str]]) -> str:
    """Build an ``Authorization`` value from ``(user, password)`` or ``"user:password"``."""
    if isinstance(credentials, str):
        user, _, password = credentials.partition(":")
    elif isinstance(credentials, (tuple, list)) and len(credentials) == 2:
        user, password = credentials
    else:
        raise ValueError("basic_auth must be (username, password) or 'username:password'")
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _quote_disposition(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', "%22").replace("\r", "%0D").replace("\n", "%0A")


def encode_multipart(
    parts: Iterable[Mapping[str, Any]],
    boundary: Optional[str] = None,
) -> Tuple[bytes, str]:
    """
    Encode ``multipart/form-data`` parts.

    Each part is a mapping with ``name`` and ``content`` (str or bytes),
    and optionally ``filename`` and ``content_type``.

    Returns:
        Tuple of (body, content type header value including the boundary)
    """
    if boundary is None:
        boundary = os.urandom(16).hex()
    delimiter = f"--{boundary}".encode("ascii")

    chunks: List[bytes] = []
    for part in parts:
        if "name" not in part or "content" not in part:
            raise ValueError("multipart parts need 'name' and 'content'")
        name = str(part["name"])
        content = part["content"]
        filename = part.get("filename")

        if isinstance(content, str):
            payload = content.encode("utf-8")
            default_type = "text/plain; charset=utf-8"
        elif isinstance(content, (bytes, bytearray)):
            payload = bytes(content)
            default_type = "application/octet-stream"
        else:
            raise ValueError(f"multipart content for {name!r} must be str or bytes")

        disposition = f'form-data; name="{_quote_disposition(name)}"'
        if filename:
            disposition += f'; filename="{_quote_disposition(str(filename))}"'
            guessed, _ = mimetypes.guess_type(str(filename))
            default_type = guessed or default_type
        content_type = part.get("content_type") or (default_type if filename else None)

        chunks.append(delimiter + b"\r\n")
        chunks.append(f"Content-Disposition: {disposition}\r\n".encode("utf-8"))
        if content_type:
            chunks.append(f"Content-Type: {content_type}\r\n".encode("latin-1"))
        chunks.append(b"\r\n")
        chunks.append(payload)
        chunks.append(b"\r\n")

    chunks.append(delimiter + b"--\r\n")
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"
