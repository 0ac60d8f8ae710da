"""Helpers shared by the test modules."""

import time
from typing import Callable, List, Optional, Tuple


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def http_response(
    status: int = 200,
    body: bytes = b"",
    headers: Optional[List[Tuple[str, str]]] = None,
    reason: str = "OK",
) -> bytes:
    """Render a raw HTTP/1.1 response, adding Content-Length unless framed otherwise."""
    headers = headers or []
    lines = [f"HTTP/1.1 {status} {reason}"]
    for name, value in headers:
        lines.append(f"{name}: {value}")
    if not any(name.lower() in ("content-length", "transfer-encoding") for name, _ in headers):
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body
