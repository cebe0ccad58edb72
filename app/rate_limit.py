"""Daily API rate limiting backed by Redis counters.

Flow Diagram — check()
======================
::
    ┌──────────────────┐
    │ check(key, limit)│
    └────────┬─────────┘
             ▼
    limit == -1 ? ──yes──► allowed (counter untouched, no headers)
             │ no
             ▼
    cache configured ? ──no──► allowed (fail open)
             │ yes
             ▼
    INCR rl:<key>:<YYYY-MM-DD> ──error──► allowed (fail open)
             │
             ▼
    result == 1 ? ──yes──► EXPIRE 24h
             │
             ▼
    allowed = current <= limit

Key Behaviours
===============
- Fixed daily window: the counter resets at the UTC date boundary because the
  date is part of the key. The expiry is set only on the first increment of the
  day, so later requests never push the reset out.
- Increments are atomic in Redis; no application locking.
- Any counter-store failure allows the request.
"""

import datetime
import logging
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass

import redis.asyncio as redis
from prometheus_client import Counter

from app.enums import RateLimitDecision

__all__ = [
    "RATE_LIMIT_PREFIX",
    "UNLIMITED",
    "RateLimitResult",
    "RateLimiter",
    "apply_rate_limit_headers",
    "rate_limit_headers",
]

RATE_LIMIT_PREFIX = "rl:"
UNLIMITED = -1

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "qrlink_rate_limit_decisions_total",
    "Rate limiter decisions",
    ["decision"],
)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    remaining: int

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Headers describing the caller's quota; empty for unlimited keys."""
    if result.is_unlimited:
        return {}
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
    }


def apply_rate_limit_headers(headers: MutableMapping[str, str], result: RateLimitResult) -> None:
    for name, value in rate_limit_headers(result).items():
        headers[name] = value


class RateLimiter:
    """Per-API-key daily request counter.

    Args:
        cache: Redis client, or None when caching is disabled (always allows).
        logger: Logger for fail-open and limit-exceeded events.
        window_seconds: Expiry applied to a fresh daily counter.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        cache: redis.Redis | None,
        logger: logging.Logger | logging.LoggerAdapter,
        window_seconds: int = 60 * 60 * 24,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self._cache = cache
        self._cache_enabled = cache is not None
        self._logger = logger
        self._window_seconds = window_seconds
        self._clock = clock

    @classmethod
    def from_context(cls, ctx) -> "RateLimiter":
        return cls(cache=ctx.cache, logger=ctx.logger, window_seconds=ctx.settings.RATE_LIMIT_WINDOW_SECONDS)

    def counter_key(self, key_id: str) -> str:
        today = self._clock().astimezone(datetime.timezone.utc).date().isoformat()
        return f"{RATE_LIMIT_PREFIX}{key_id}:{today}"

    async def check(self, key_id: str, limit_per_day: int) -> RateLimitResult:
        if limit_per_day == UNLIMITED:
            RATE_LIMIT_DECISIONS_TOTAL.labels(decision=RateLimitDecision.UNLIMITED).inc()
            return RateLimitResult(allowed=True, current=0, limit=UNLIMITED, remaining=UNLIMITED)

        if not self._cache_enabled:
            self._logger.warning(f"Rate limiting skipped: Redis not configured (key {key_id})")
            return self._fail_open(limit_per_day)

        counter_key = self.counter_key(key_id)
        try:
            current = await self._cache.incr(counter_key)
            if current == 1:
                await self._cache.expire(counter_key, self._window_seconds)
        except Exception as exc:
            self._logger.error(f"Rate limit check failed for key {key_id}: {exc}")
            return self._fail_open(limit_per_day)

        allowed = current <= limit_per_day
        remaining = max(0, limit_per_day - current)
        if allowed:
            RATE_LIMIT_DECISIONS_TOTAL.labels(decision=RateLimitDecision.ALLOWED).inc()
        else:
            RATE_LIMIT_DECISIONS_TOTAL.labels(decision=RateLimitDecision.LIMITED).inc()
            self._logger.warning(
                f"Rate limit exceeded for key {key_id}",
                extra={"operation": "rate_limit", "key_id": key_id, "current": current, "limit": limit_per_day},
            )
        return RateLimitResult(allowed=allowed, current=current, limit=limit_per_day, remaining=remaining)

    def _fail_open(self, limit_per_day: int) -> RateLimitResult:
        RATE_LIMIT_DECISIONS_TOTAL.labels(decision=RateLimitDecision.FAIL_OPEN).inc()
        return RateLimitResult(allowed=True, current=0, limit=limit_per_day, remaining=limit_per_day)
