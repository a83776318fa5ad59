"""
api/limiter.py -- Fixed-window rate limiter shared by every sensitive route.

One RateLimiter instance is built at startup (api/components.py) and shared
by all pipelines, so every route sees the same counter store. Counting is
delegated to the `limits` package (the backend slowapi is built on): a
FixedWindowRateLimiter over a storage created from RATE_LIMIT_STORAGE_URI,
"memory://" by default.

Counters are keyed by (scope, client key): the scope is the policy name, the
client key is the normalized client IP (core/net.py) or "user:<id>".

Per hit:
  1. no counter, or its window has ended -> fresh counter, count=1,
     reset at now + window
  2. otherwise count += 1
  3. allowed = count <= limit, remaining = max(0, limit - count)

The hit and the window-stats read run under one lock so concurrent hits on
the same key never report a count that belongs to another request.

Known limitation: with the memory:// storage, counters live in process
memory. A restart resets them and a multi-instance deployment enforces the
limit per instance. Point RATE_LIMIT_STORAGE_URI at redis:// to share them.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger("authguard.ratelimit")


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int
    item: RateLimitItem = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "item", RateLimitItemPerSecond(self.max_requests, self.window_seconds, namespace="authguard")
        )


AUTH_POLICY = RateLimitPolicy("auth", 5, 15 * 60)
SIGNUP_POLICY = RateLimitPolicy("signup", 3, 60 * 60)
API_POLICY = RateLimitPolicy("api", 100, 15 * 60)
PASSWORD_RESET_POLICY = RateLimitPolicy("password_reset", 3, 60 * 60)
VERIFICATION_POLICY = RateLimitPolicy("verification", 5, 60 * 60)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    count: int

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, at least 1."""
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


def user_key(user_id: str) -> str:
    """Client key for limits that follow an account rather than an address."""
    return f"user:{user_id}"


class RateLimiter:
    """Thread-safe fixed-window counters.

    Usage:
        limiter = RateLimiter()
        result = limiter.hit(AUTH_POLICY, client_ip(request))
        if not result.allowed: ...
    """

    def __init__(self, storage_uri: str = "memory://") -> None:
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)
        self._lock = threading.Lock()

    def now(self) -> float:
        return time.time()

    def hit(self, policy: RateLimitPolicy, client_key: str) -> RateLimitResult:
        """Count one request against (policy, client_key) and report the outcome."""
        identifiers = (policy.name, client_key)
        with self._lock:
            allowed = self._strategy.hit(policy.item, *identifiers)
            count = self._storage.get(policy.item.key_for(*identifiers))
            stats = self._strategy.get_window_stats(policy.item, *identifiers)

        if not allowed:
            logger.info("rate limit exceeded scope=%s key=%s count=%d", policy.name, client_key, count)
        return RateLimitResult(
            allowed=allowed,
            limit=policy.max_requests,
            remaining=stats.remaining,
            reset_at=stats.reset_time,
            count=count,
        )

    def reset(self, policy: RateLimitPolicy, client_key: str) -> None:
        with self._lock:
            self._strategy.clear(policy.item, policy.name, client_key)
