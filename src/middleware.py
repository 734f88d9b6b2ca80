"""
Inbound policy middleware.

Rate limiting is a sliding window per client IP; requests over the limit are
rejected with 429 rather than delayed. Both middlewares are plain ASGI so
streamed relay bodies pass through untouched.
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from models import RelayPolicy

logger = logging.getLogger(__name__)


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
}


def get_client_info(request: Request):
    """Extract client information from request"""
    # X-Forwarded-For can contain multiple IPs: "client, proxy1, proxy2"
    # We want the first one (the original client IP)
    ip_address = "unknown"
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for and forwarded_for.split(",")[0].strip():
        ip_address = forwarded_for.split(",")[0].strip()
    elif request.client:
        # Fallback to direct connection IP
        ip_address = request.client.host

    return {
        "user_agent": request.headers.get("user-agent") or "unknown",
        "ip_address": ip_address
    }


class SlidingWindowLimiter:
    """Sliding window rate limiter keyed by client."""

    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}

    def _expire(self, key: str, now: float) -> Deque[float]:
        timestamps = self._requests.get(key)
        if timestamps is None:
            timestamps = deque()
            self._requests[key] = timestamps
        while timestamps and timestamps[0] <= now - self.window:
            timestamps.popleft()
        return timestamps

    def hit(self, key: str) -> bool:
        """Record a request. Returns False when the key is over its limit."""
        now = self._clock()
        timestamps = self._expire(key, now)
        if len(timestamps) >= self.max_requests:
            return False
        timestamps.append(now)
        return True

    def retry_after(self, key: str) -> float:
        """Seconds until the oldest request of key leaves the window."""
        timestamps = self._requests.get(key)
        if not timestamps:
            return 0.0
        return max(0.0, timestamps[0] + self.window - self._clock())

    def prune(self) -> int:
        """Drop keys with no request left in the window."""
        now = self._clock()
        stale = [key for key in list(self._requests) if not self._expire(key, now)]
        for key in stale:
            del self._requests[key]
        return len(stale)

    @classmethod
    def from_policy(cls, policy: RelayPolicy) -> "SlidingWindowLimiter":
        return cls(policy.max_requests, policy.window_seconds)


def rate_limit_key(scope: Scope, trust_proxy_headers: bool = False) -> str:
    """
    Key a request for rate limiting.

    The socket peer is used unless proxy headers are explicitly trusted.
    """
    request = Request(scope)
    if trust_proxy_headers:
        return get_client_info(request)["ip_address"]
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware:
    def __init__(self, app: ASGIApp, limiter: SlidingWindowLimiter, prune_every: Optional[int] = 1000,
                 trust_proxy_headers: bool = False):
        self.app = app
        self.limiter = limiter
        self.trust_proxy_headers = trust_proxy_headers
        self.prune_every = prune_every
        self._seen = 0

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        self._seen += 1
        if self.prune_every and self._seen % self.prune_every == 0:
            self.limiter.prune()

        client_ip = rate_limit_key(scope, self.trust_proxy_headers)
        if not self.limiter.hit(client_ip):
            retry_after = self.limiter.retry_after(client_ip)
            logger.warning(f"Rate limit exceeded for {client_ip}, retry in {retry_after:.0f}s")
            response = JSONResponse(
                status_code=429,
                content={"error": "Too many requests, please try again later."},
                headers={"Retry-After": str(int(retry_after) + 1)}
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


class SecurityHeadersMiddleware:
    def __init__(self, app: ASGIApp, headers: Optional[Dict[str, str]] = None):
        self.app = app
        self.headers = headers or SECURITY_HEADERS

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_headers)
