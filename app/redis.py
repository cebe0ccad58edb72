"""Redis client management for the QR redirect service.

This module owns the process-wide Redis client. Unlike the database, the cache is
optional: when ``REDIS_URL`` is empty, ``get_redis()`` returns ``None`` and every
component built on it runs its store-only (or fail-open) path.

Flow Diagram — Redis Client
=============================
::
    ┌─────────────┐
    │ get_redis()  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ REDIS_URL    │
    │ configured?  │
    └──────┬──────┘
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────────┐
│ Return  │  │ Create once, │
│ None    │  │ then reuse   │
└─────────┘  └─────────────┘

How to Use
===========
**Step 1 — Resolve at startup**::
    cache = await get_redis()   # redis.Redis | None

**Step 2 — Inject into components**::
    limiter = RateLimiter(cache=cache, logger=logger)

**Step 3 — Cleanup on shutdown**::
    await close_redis()

Key Behaviours
===============
- Redis client is created lazily on first access.
- Global client is reused across all requests.
- Socket timeouts are short: a slow cache must not hold up a redirect.
- UTF-8 encoding with decode_responses for string operations.

Functions:
    get_redis():  Return the shared Redis client, or None when disabled.
    close_redis():  Cleanup function for shutdown.
"""

import redis.asyncio as redis

from app.config import get_settings

__all__ = ["close_redis", "get_redis"]

settings = get_settings()

redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis | None:
    global redis_client
    if not settings.REDIS_URL:
        return None
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return redis_client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
