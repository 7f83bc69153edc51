"""In-memory sliding window rate limiter, rate-limit models and FastAPI middleware.

``LocalWindowTracker`` is only correct for a single process: several
instances each keep their own windows and enforce independent limits. It is
the fallback used when Redis is unavailable, not a replacement for the
distributed limiter when running more than one instance.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import settings
from core.logging import request_ctx

if TYPE_CHECKING:
    from cache.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """A rate-limit policy: at most ``limit`` requests per ``window`` seconds."""

    bucket: str
    limit: int
    window: int

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise ValueError(f"limit must be positive, got {self.limit}")
        if self.window <= 0:
            raise ValueError(f"window must be positive, got {self.window}")

    def key_for(self, identifier: str) -> str:
        """Logical key addressing one subject's window."""
        return f"ratelimit:{self.bucket}:{identifier}"


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int


# Application defaults, freely redefinable
RATE_LIMITS: dict[str, RateLimitConfig] = {
    # Security-sensitive endpoints
    "CLI_TOKEN_EXCHANGE": RateLimitConfig(bucket="cli:token", limit=5, window=60),
    "SHARE_TOKEN_GENERATION": RateLimitConfig(bucket="share:token", limit=10, window=60),
    "LINK_CREATION": RateLimitConfig(bucket="link:create", limit=20, window=60),
    # Tracking / redirect, per IP
    "LINK_REDIRECT": RateLimitConfig(bucket="link:redirect", limit=100, window=60),
    # Ingestion, per website / pixel
    "EVENT_INGESTION": RateLimitConfig(bucket="event:ingest", limit=1000, window=60),
    "PIXEL_FIRE": RateLimitConfig(bucket="pixel:fire", limit=500, window=60),
    "API_GENERAL": RateLimitConfig(bucket="api:general", limit=100, window=60),
}


class LocalWindowTracker:
    """Per-process sliding window over epoch-second timestamps.

    Each key remembers the window length of the policy that last touched it,
    so a sweep expires every key under its own window. Mutated only from the
    event loop, so no locking is needed.
    """

    def __init__(self, sweep_probability: float | None = None, rng: random.Random | None = None):
        if sweep_probability is None:
            sweep_probability = settings.ratelimit.sweep_probability
        self.sweep_probability = sweep_probability
        self._rng = rng or random.Random()
        # key -> (window seconds, admitted timestamps)
        self._windows: dict[str, tuple[int, list[int]]] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def __contains__(self, key: str) -> bool:
        return key in self._windows

    def check_limit(self, key: str, config: RateLimitConfig, now: int, window_start: int) -> RateLimitResult:
        """Admit or reject one request for *key* at *now*."""
        timestamps = [ts for ts in self._timestamps(key) if ts > window_start]
        reset = now + config.window

        if len(timestamps) >= config.limit:
            result = RateLimitResult(success=False, limit=config.limit, remaining=0, reset=reset)
        else:
            timestamps.append(now)
            result = RateLimitResult(
                success=True, limit=config.limit, remaining=config.limit - len(timestamps), reset=reset,
            )
        self._windows[key] = (now - window_start, timestamps)

        if self._rng.random() < self.sweep_probability:
            self.sweep(now)
        return result

    def remaining(self, key: str, config: RateLimitConfig, now: int | None = None) -> int:
        """Requests left in the current window, without recording one."""
        if now is None:
            now = int(time.time())
        window_start = now - config.window
        live = [ts for ts in self._timestamps(key) if ts > window_start]
        return max(0, config.limit - len(live))

    def _timestamps(self, key: str) -> list[int]:
        entry = self._windows.get(key)
        return entry[1] if entry else []

    def sweep(self, now: int) -> int:
        """Expire each key's timestamps under its own window and forget keys left empty."""
        removed = 0
        for key, (window, timestamps) in list(self._windows.items()):
            live = [ts for ts in timestamps if ts > now - window]
            if live:
                self._windows[key] = (window, live)
            else:
                del self._windows[key]
                removed += 1
        if removed:
            logger.debug("Swept %d idle rate-limit windows", removed)
        return removed

    def reset(self) -> None:
        """Clear all windows (useful in tests)."""
        self._windows.clear()


def rate_limit_headers(result: RateLimitResult, now: int | None = None) -> dict[str, str]:
    """Standard rate-limit response headers; ``Retry-After`` only when rejected."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }
    if not result.success:
        if now is None:
            now = int(time.time())
        headers["Retry-After"] = str(max(0, result.reset - now))
    return headers


EXCLUDED_PREFIXES = ("/api/health", "/static")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware that enforces one rate-limit policy per client."""

    def __init__(self, app, limiter: RateLimiter, config: RateLimitConfig | None = None,
                 excluded_prefixes: tuple[str, ...] = EXCLUDED_PREFIXES, enabled: bool | None = None):
        super().__init__(app)
        self.enabled = settings.ratelimit.enabled if enabled is None else enabled
        self.limiter = limiter
        self.config = config or RATE_LIMITS["API_GENERAL"]
        self.excluded_prefixes = excluded_prefixes

    @staticmethod
    def identify(request: Request) -> str:
        user = getattr(request.state, "user", None) or {}
        if user.get("user_id"):
            return str(user["user_id"])
        return request.client.host if request.client else "anon"

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self.enabled or any(path.startswith(p) for p in self.excluded_prefixes):
            return await call_next(request)

        identifier = self.identify(request)
        token = request_ctx.set({
            **request_ctx.get(), "identifier": identifier, "bucket": self.config.bucket,
        })
        try:
            result = await self.limiter.check(identifier, self.config)
            if not result.success:
                logger.info("Rate limit exceeded")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Too Many Requests"},
                    headers=rate_limit_headers(result),
                )
            response = await call_next(request)
        finally:
            request_ctx.reset(token)

        response.headers.update(rate_limit_headers(result))
        return response
