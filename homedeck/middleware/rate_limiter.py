"""Token bucket rate limiting for the expensive chat routes."""
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# POST routes that generate a title or mint a share link
LIMITED_PATHS = re.compile(r"^/api/chat/threads/[^/]+/(?P<action>suggest-title|share)/?$")

IDLE_BUCKET_SECONDS = 600
PRUNE_INTERVAL_SECONDS = 300


@dataclass
class TokenBucket:
    """Holds up to `capacity` tokens, refilled continuously."""
    capacity: int
    refill_per_second: float
    tokens: float
    updated_at: float

    def take(self, now: float) -> float:
        """Spend one token.

        Returns:
            0 when the request may proceed, otherwise the seconds until a
            token will be available.
        """
        self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.refill_per_second)
        self.updated_at = now
        if self.tokens >= 1:
            self.tokens -= 1
            return 0.0
        return (1 - self.tokens) / self.refill_per_second


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """Per-client, per-action budgets on suggest-title and share POSTs."""

    def __init__(
        self,
        app,
        requests_per_minute: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            app: ASGI application.
            requests_per_minute: Budget of each client for each limited action.
            clock: Monotonic time source.
        """
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.clock = clock
        self.buckets: Dict[str, TokenBucket] = {}
        self._pruned_at = clock()

    def _bucket_for(self, key: str, now: float) -> TokenBucket:
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                capacity=self.requests_per_minute,
                refill_per_second=self.requests_per_minute / 60.0,
                tokens=float(self.requests_per_minute),
                updated_at=now,
            )
            self.buckets[key] = bucket
        return bucket

    def _prune(self, now: float) -> None:
        if now - self._pruned_at < PRUNE_INTERVAL_SECONDS:
            return
        self.buckets = {
            key: bucket for key, bucket in self.buckets.items()
            if now - bucket.updated_at < IDLE_BUCKET_SECONDS
        }
        self._pruned_at = now

    async def dispatch(self, request: Request, call_next):
        match = LIMITED_PATHS.match(request.url.path) if request.method == "POST" else None
        if match is None:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        now = self.clock()
        self._prune(now)
        wait = self._bucket_for(f"{client}:{match['action']}", now).take(now)
        if wait:
            logger.warning(f"Rate limit hit by {client} on {match['action']}, retry in {wait:.1f}s")
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": f"Too many requests. Please wait {wait:.1f} seconds.",
                    "retry_after": wait,
                    "limit": self.requests_per_minute,
                },
                headers={"Retry-After": str(int(wait) + 1)},
            )
        return await call_next(request)
