import logging
import math
import os
import time
from dataclasses import dataclass

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter

logger = logging.getLogger("backend.limiter")

REDIS_URL = os.getenv("REDIS_URL", "")

# Public submissions: 10 per minute per form and client
SUBMIT_RATE_LIMIT = 10
SUBMIT_RATE_WINDOW_MS = 60_000


def forwarded_for_ip(request: Request) -> str:
    """Resolve client IP using X-Forwarded-For first, then fallback to socket IP."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        ip = xff.split(",")[0].strip()
        if ip:
            return ip
    return request.client.host if request.client else "unknown"


def _storage_uri() -> str:
    if REDIS_URL:
        logger.info("[limiter] Using Redis for rate limiting")
        return REDIS_URL
    logger.info("[limiter] Using in-memory rate limiting (Redis not configured)")
    return "memory://"


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reset_in_ms: int

    @property
    def retry_after(self) -> int:
        """Seconds until the window resets, rounded up."""
        return max(1, math.ceil(self.reset_in_ms / 1000))


class RateLimitStore:
    """Fixed-window admission counter keyed by arbitrary strings.

    The window opens on the first hit for a key and expires on its own;
    nothing is ever torn down. Backed by ``limits`` storage, so the same
    class serves single-instance (memory://) and shared (redis://) setups.
    """

    def __init__(self, storage_uri: str = "memory://"):
        self.storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self.storage)

    def admit(self, key: str, limit: int, window_ms: int) -> Admission:
        window_s = max(1, math.ceil(window_ms / 1000))
        item = RateLimitItemPerSecond(limit, window_s)
        allowed = self._strategy.hit(item, key)
        stats = self._strategy.get_window_stats(item, key)
        reset_in_ms = max(0, int((stats.reset_time - time.time()) * 1000))
        return Admission(allowed=allowed, reset_in_ms=reset_in_ms)

    def reset(self) -> None:
        self.storage.reset()


# Created once at import; shared by every request
_storage_location = _storage_uri()
rate_limit_store = RateLimitStore(_storage_location)


def get_rate_limit_store() -> RateLimitStore:
    """FastAPI dependency so the store can be swapped (tests, multi-instance)."""
    return rate_limit_store


# Per-route limiter for authenticated endpoints (slowapi decorators)
limiter = Limiter(key_func=forwarded_for_ip, storage_uri=_storage_location)
