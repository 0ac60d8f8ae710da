"""
Redirect handling.

``RedirectPolicy`` decides whether a response is followed and builds the
descriptor for the next hop. Whether 301/302 downgrade the method to GET
varies between clients, so it is policy, not a hard-coded rule.
"""

import logging
from dataclasses import dataclass, replace
from typing import FrozenSet, Optional, Sequence
from urllib.parse import urljoin

from .exceptions import RedirectLimitError
from .http_primitives import Headers, RequestDescriptor, URLComponents

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

# Headers describing a body that is dropped with it.
BODY_HEADERS = ("Content-Length", "Content-Type", "Transfer-Encoding", "Content-Encoding")


@dataclass(frozen=True)
class RedirectPolicy:
    """
    Redirect rules.

    Attributes:
        statuses: Status codes that are followed
        rewrite_to_get: Statuses that turn methods other than GET/HEAD into
            GET and drop the body. 303 always rewrites.
        strip_auth_cross_origin: Drop ``Authorization`` when the origin changes
    """

    statuses: FrozenSet[int] = REDIRECT_STATUSES
    rewrite_to_get: FrozenSet[int] = frozenset({301, 302})
    strip_auth_cross_origin: bool = True

    def is_redirect(self, status: int, headers: Headers) -> bool:
        return status in self.statuses and bool(headers.get("location"))

    def should_follow(self, descriptor: RequestDescriptor, status: int, headers: Headers) -> bool:
        """Whether the response must be followed rather than returned."""
        if not descriptor.follow_redirects or not self.is_redirect(status, headers):
            return False
        if status in (307, 308) and not descriptor.replayable:
            logger.warning(
                f"Not following {status} from {descriptor.url}: request body cannot be resent"
            )
            return False
        return True

    def check_limit(self, descriptor: RequestDescriptor, history: Sequence[str]) -> None:
        """
        Raises:
            RedirectLimitError: If one more hop would exceed ``max_redirects``
        """
        if len(history) >= descriptor.max_redirects:
            raise RedirectLimitError(descriptor.max_redirects, history)

    def next_request(self, descriptor: RequestDescriptor, status: int, location: str) -> RequestDescriptor:
        """Build the descriptor for the redirect target."""
        target = URLComponents.from_url(urljoin(descriptor.url.geturl(), location.strip()))

        method = descriptor.method
        body = descriptor.body
        headers = descriptor.headers.remove("Host")

        if status == 303:
            rewrite = method != "HEAD"
        else:
            rewrite = status in self.rewrite_to_get and method not in ("GET", "HEAD")
        if rewrite:
            method = "GET"
            body = None
            headers = headers.remove(*BODY_HEADERS)

        if self.strip_auth_cross_origin and target.origin != descriptor.url.origin:
            headers = headers.remove("Authorization")

        logger.debug(f"Redirect {status}: {descriptor.method} {descriptor.url} -> {method} {target}")
        return replace(descriptor, method=method, url=target, headers=headers, body=body)


DEFAULT_REDIRECT_POLICY = RedirectPolicy()


def resolve_policy(descriptor: RequestDescriptor, default: Optional[RedirectPolicy] = None) -> RedirectPolicy:
    return descriptor.redirect_policy or default or DEFAULT_REDIRECT_POLICY
