"""
Rate limiting for the authentication endpoints.

These endpoints send SMS messages or accept credentials, so each client IP
gets a sliding window per endpoint:

- /api/auth/subscriber/register: 5 requests per 15 minutes
- /api/auth/subscriber/send-otp: OTP_SEND_LIMIT per OTP_SEND_WINDOW_SECONDS
- /api/auth/subscriber/login: 10 requests per 15 minutes
- /api/admin/auth/login: 10 requests per 15 minutes

Usage:
    from .rate_limiter import rate_limit_dependency

    @router.post("/login", dependencies=[Depends(rate_limit_dependency(10, 900))])
    async def login(...):
        ...
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .compliance import client_ip
from .core.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    window_seconds: int
    count: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


# ────────────────────────────────────────────────────────────────
# In-Memory Rate Limiter
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Sliding-window limiter keyed by (client, endpoint).

    State lives in the process; each server instance limits independently.
    """

    def __init__(self, sweep_interval: int = 300, idle_seconds: int = 3600):
        self.windows: Dict[Tuple[str, str], Deque[float]] = {}
        self.sweep_interval = sweep_interval
        self.idle_seconds = idle_seconds
        self.last_sweep = time.time()

    def _sweep(self, now: float) -> None:
        """Forget windows that have been idle for a while."""
        if now - self.last_sweep < self.sweep_interval:
            return
        cutoff = now - self.idle_seconds
        for key in [k for k, hits in self.windows.items() if not hits or hits[-1] <= cutoff]:
            del self.windows[key]
        self.last_sweep = now
        logger.debug(f"Rate limiter sweep: {len(self.windows)} windows tracked")

    def hit(self, client: str, endpoint: str, max_requests: int, window_seconds: int = 60) -> RateLimitResult:
        """Record a request if the window has room and report the window state."""
        now = time.time()
        self._sweep(now)

        hits = self.windows.setdefault((client, endpoint), deque())
        while hits and hits[0] <= now - window_seconds:
            hits.popleft()

        allowed = len(hits) < max_requests
        if allowed:
            hits.append(now)
        oldest = hits[0] if hits else now

        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - len(hits)),
            reset_at=int(oldest + window_seconds),
            window_seconds=window_seconds,
            count=len(hits),
        )

    def forget(self, client: Optional[str] = None) -> None:
        if client is None:
            self.windows.clear()
            return
        for key in [k for k in self.windows if k[0] == client]:
            del self.windows[key]

    def stats(self) -> dict:
        per_client: Dict[str, int] = {}
        for (client, _), hits in self.windows.items():
            per_client[client] = per_client.get(client, 0) + len(hits)
        top = sorted(per_client.items(), key=lambda item: item[1], reverse=True)[:10]
        return {
            "totalTrackedIps": len(per_client),
            "totalTrackedRequests": sum(per_client.values()),
            "topIps": [{"ip": ip, "requestCount": count} for ip, count in top],
        }


_limiter = RateLimiter()


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

def rate_limit_dependency(max_requests: int, window_seconds: int = 60):
    """
    Build a route dependency enforcing max_requests per window for the path.

    Over the limit it raises RateLimitError (429) carrying Retry-After and
    X-RateLimit-* headers. Otherwise the headers are left on request.state
    for RateLimitHeadersMiddleware.
    """
    async def dependency(request: Request):
        endpoint = request.url.path
        client = client_ip(request) or "unknown"
        result = _limiter.hit(client, endpoint, max_requests, window_seconds)

        if not result.allowed:
            retry_after = max(1, result.reset_at - int(time.time()))
            logger.warning(
                f"[RATE_LIMIT] Blocked {client} on {endpoint}: "
                f"{result.count}/{result.limit} in {window_seconds}s"
            )
            raise RateLimitError(
                "Too many requests. Please try again later.",
                details={
                    "retryAfter": retry_after,
                    "resetTime": datetime.fromtimestamp(result.reset_at, tz=timezone.utc).isoformat(),
                    "limit": max_requests,
                    "windowSeconds": window_seconds,
                },
                headers={"Retry-After": str(retry_after), **result.headers()},
            )

        request.state.rate_limit_headers = result.headers()

    return dependency


# ────────────────────────────────────────────────────────────────
# Middleware
# ────────────────────────────────────────────────────────────────

class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copy the headers stored by rate_limit_dependency onto the response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in getattr(request.state, "rate_limit_headers", {}).items():
            response.headers[header] = value
        return response


def get_rate_limit_stats() -> dict:
    return _limiter.stats()


def clear_rate_limits(ip_address: Optional[str] = None):
    """Clear rate limits for one IP, or for everyone."""
    _limiter.forget(ip_address)
    logger.info(f"Cleared rate limits for {ip_address or 'all clients'}")
