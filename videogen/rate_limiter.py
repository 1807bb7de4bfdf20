"""
Sliding-window rate limiter with a pluggable window store.

The limiter is identity-agnostic: callers build the key (user + action +
tier) and pick the limit for the tier. Each key maps to an ordered set of
request timestamps; a request counts while `ts > now - window`.

Stores:
  RedisWindowStore       — sorted set per key, WATCH/MULTI check-and-record
  InMemoryWindowStore    — see fallback_limiter.py

Storage errors never fail open: the limiter either falls back to a stricter
in-memory window or denies.
"""

import os
import time
import uuid
import logging
from typing import Callable, NamedTuple, Optional, Protocol

import redis

from .errors import RateLimitStoreError

logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────

WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600"))  # 1 hour

TIER_LIMITS = {
    "free": int(os.getenv("RATE_LIMIT_FREE", "5")),
    "pro": int(os.getenv("RATE_LIMIT_PRO", "25")),
    "premium": int(os.getenv("RATE_LIMIT_PREMIUM", "50")),
}

FALLBACK_MAX_REQUESTS = 3   # cap applied while the primary store is down
KEY_TTL_PADDING = 60        # Redis key TTL slightly beyond the window


class WindowState(NamedTuple):
    allowed: bool
    count: int                # requests in the window after this check
    oldest: Optional[float]   # oldest in-window timestamp, None if empty


class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    reset_at: float           # unix time the oldest request leaves the window
    retry_after: int = 0      # whole seconds until reset_at, 0 when allowed


class WindowStore(Protocol):
    def record(
        self, key: str, now: float, window_seconds: float, max_requests: int
    ) -> WindowState:
        """Prune, count, and record `now` if under the limit, atomically."""
        ...


# ── Key / tier helpers ────────────────────────────────────────────────────────

def rate_limit_key(user_id: str, tier: str, action: str = "generation") -> str:
    return f"ratelimit:{action}:{tier}:{user_id}"


def tier_for_balance(balance: int, is_recharged: bool = False) -> str:
    """Users who never paid are free; paying users above 100 credits are premium."""
    if not is_recharged:
        return "free"
    return "premium" if balance > 100 else "pro"


# ── Redis store ───────────────────────────────────────────────────────────────

class RedisWindowStore:
    """
    Sorted set keyed by the limiter key; members are unique request ids,
    scores are timestamps. Read + write happen in one optimistic transaction
    so two concurrent checks cannot both take the last slot.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def record(self, key: str, now: float, window_seconds: float, max_requests: int) -> WindowState:
        window_start = now - window_seconds

        def _txn(pipe):
            entries = pipe.zrangebyscore(key, f"({window_start}", "+inf", withscores=True)
            count = len(entries)
            oldest = entries[0][1] if entries else None

            pipe.multi()
            pipe.zremrangebyscore(key, "-inf", window_start)
            if count < max_requests:
                pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
                pipe.expire(key, int(window_seconds) + KEY_TTL_PADDING)
            return count, oldest

        try:
            count, oldest = self.redis.transaction(_txn, key, value_from_callable=True)
        except redis.RedisError as e:
            raise RateLimitStoreError(f"Redis window store failed for {key}: {e}") from e

        if count >= max_requests:
            return WindowState(False, count, oldest)
        return WindowState(True, count + 1, oldest if oldest is not None else now)


# ── Limiter ───────────────────────────────────────────────────────────────────

class SlidingWindowRateLimiter:
    """
    Usage:
        limiter = SlidingWindowRateLimiter(RedisWindowStore(r), fallback=InMemoryWindowStore())
        decision = limiter.check(rate_limit_key(user_id, "free"), 3600, 5)
    """

    def __init__(
        self,
        store: WindowStore,
        fallback: Optional[WindowStore] = None,
        fallback_max_requests: int = FALLBACK_MAX_REQUESTS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._fallback = fallback
        self._fallback_max_requests = fallback_max_requests
        self._clock = clock

    @property
    def stores(self) -> tuple:
        """Primary store, then the fallback if one is configured."""
        return tuple(s for s in (self._store, self._fallback) if s is not None)

    def check(self, key: str, window_seconds: float, max_requests: int) -> RateLimitDecision:
        """
        Check and record a request for `key`.

        Returns:
            RateLimitDecision(allowed, remaining, reset_at, retry_after)
        """
        now = self._clock()

        try:
            state = self._store.record(key, now, window_seconds, max_requests)
        except RateLimitStoreError as e:
            if self._fallback is None:
                logger.error(f"Rate limit store unavailable, denying {key}: {e}")
                return RateLimitDecision(False, 0, now + window_seconds, int(window_seconds))

            max_requests = min(max_requests, self._fallback_max_requests)
            logger.warning(f"Rate limit store unavailable, using in-memory fallback ({max_requests}/window): {e}")
            state = self._fallback.record(key, now, window_seconds, max_requests)

        reset_at = (state.oldest if state.oldest is not None else now) + window_seconds

        if not state.allowed:
            retry_after = int(reset_at - now) + 1
            logger.warning(f"Rate limit exceeded for {key}: {state.count}/{max_requests}")
            return RateLimitDecision(False, 0, reset_at, retry_after)

        remaining = max(0, max_requests - state.count)
        logger.info(f"Rate limit OK for {key}: {state.count}/{max_requests} ({remaining} remaining)")
        return RateLimitDecision(True, remaining, reset_at, 0)
