"""Redirect resolution: the QR scan hot path.

Architecture Overview
==================
::
    ┌──────────────────────────────────────────────────────────┐
    │                    RedirectResolver                       │
    │  cache-aside lookup → scheme check → detached scan record │
    └──────────────────────────────────────────────────────────┘
             │                   │                     │
             ▼                   ▼                     ▼
    ┌─────────────────┐ ┌─────────────────┐ ┌────────────────────┐
    │ Redis (optional)│ │   PostgreSQL    │ │ BackgroundTaskRunner│
    │ redirect:<code> │ │   qr_codes      │ │ cache fill, scans   │
    └─────────────────┘ └─────────────────┘ └────────────────────┘

Flow Diagram — resolve()
========================
::
    ┌─────────────┐
    │ GET /r/:code│
    └──────┬──────┘
           ▼
    ┌─────────────┐  invalid format
    │ is_valid?   ├──────────────────► 404
    └──────┬──────┘
           ▼
    ┌─────────────┐  error → log, treat as miss
    │ Redis GET   │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            │
┌─────────┐      │
│ SELECT  ├─ none ───────────────► 404
│ qr_codes├─ inactive ───────────► 410
└────┬────┘  store error ────────► 500
     │ spawn cache fill          │
     ▼                           ▼
    ┌─────────────────────────────┐
    │ scheme is http/https?       ├─ no ─► 400
    └──────────────┬──────────────┘
                   ▼
    ┌─────────────────────────────┐
    │ spawn ScanEventRecorder     │
    └──────────────┬──────────────┘
                   ▼
                  302

Key Behaviours
===============
- The cache is best-effort: read or write failures only cost latency.
- The scheme check runs on every resolution, cache hit or not.
- Nothing after the scheme check is awaited before the response.
- Concurrent misses for one code may both fill the cache; last write wins.
"""

import logging
import time
from dataclasses import dataclass
from urllib.parse import urlsplit

import redis.asyncio as redis
from prometheus_client import Counter, Histogram
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.background import BackgroundTaskRunner
from app.config import Settings
from app.enums import CacheStatus, RedirectOutcome
from app.errors import InvalidRedirectError, ShortCodeInactiveError, ShortCodeNotFoundError, StoreUnavailableError
from app.models import ShortCodeMapping
from app.scan_service import ScanEventRecorder
from app.schemas import CachedRedirect, ScanRequest
from app.shortcode import is_valid_short_code

__all__ = ["ALLOWED_REDIRECT_SCHEMES", "INACTIVE_PAGE_HTML", "RedirectResolver", "ResolvedRedirect", "is_valid_redirect_url"]

REDIRECT_KEY_PREFIX = "redirect:"
ALLOWED_REDIRECT_SCHEMES = frozenset({"http", "https"})

INACTIVE_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>QR code inactive</title>
</head>
<body style="font-family: system-ui, sans-serif; text-align: center; padding: 4rem 1rem;">
<h1>This QR code is no longer active</h1>
<p>The owner of this QR code has deactivated it. Please contact them for an updated link.</p>
</body>
</html>
"""

REDIRECT_REQUESTS_TOTAL = Counter(
    "qrlink_redirect_requests_total",
    "Redirect resolutions by outcome",
    ["outcome", "cache_hit"],
)
REDIRECT_LOOKUP_DURATION = Histogram(
    "qrlink_redirect_lookup_duration_seconds",
    "Time spent resolving a short code before responding",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
)
CACHE_HITS_TOTAL = Counter(
    "qrlink_redirect_cache_hits_total",
    "Redirect cache hits",
)
CACHE_MISSES_TOTAL = Counter(
    "qrlink_redirect_cache_misses_total",
    "Redirect cache misses",
)
CACHE_ERRORS_TOTAL = Counter(
    "qrlink_redirect_cache_errors_total",
    "Redirect cache read/write errors",
    ["operation"],
)


def is_valid_redirect_url(url: str | None) -> bool:
    """Only http(s) URLs may be redirected to.

    ``http:example.com`` is accepted (browsers read it as ``http://example.com``);
    a bare scheme such as ``https://`` is not.
    """
    if not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme.lower() in ALLOWED_REDIRECT_SCHEMES and bool(parts.netloc or parts.path)


@dataclass(frozen=True)
class ResolvedRedirect:
    destination_url: str
    qr_resource_id: str
    organization_id: str | None
    cache_hit: bool


class RedirectResolver:
    """Resolve short codes to validated destinations.

    The cache is an optional constructor dependency; when it is None the
    resolver goes straight to the store.

    Example:
        >>> resolver = RedirectResolver(db, cache, recorder, tasks, settings, logger)
        >>> resolved = await resolver.resolve("X7kP2m", ScanRequest(user_agent=ua))
        >>> resolved.destination_url
        'https://example.com'
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: redis.Redis | None,
        recorder: ScanEventRecorder,
        tasks: BackgroundTaskRunner,
        settings: Settings,
        logger: logging.Logger | logging.LoggerAdapter,
    ):
        self._db = db
        self._cache = cache
        self._cache_enabled = cache is not None
        self._recorder = recorder
        self._tasks = tasks
        self._settings = settings
        self._logger = logger

    @classmethod
    def from_context(cls, ctx, recorder: ScanEventRecorder) -> "RedirectResolver":
        return cls(
            db=ctx.database,
            cache=ctx.cache,
            recorder=recorder,
            tasks=ctx.tasks,
            settings=ctx.settings,
            logger=ctx.logger,
        )

    async def resolve(self, short_code: str, scan: ScanRequest) -> ResolvedRedirect:
        """Resolve ``short_code`` and schedule scan recording.

        Raises:
            ShortCodeNotFoundError: Unknown (or malformed) code.
            ShortCodeInactiveError: Code exists but is deactivated.
            InvalidRedirectError: Destination is not http/https.
            StoreUnavailableError: The database could not be queried.
        """
        start_time = time.perf_counter()
        cache_hit = False
        try:
            if not is_valid_short_code(short_code):
                raise ShortCodeNotFoundError(short_code)

            redirect = await self._lookup_from_cache(short_code)
            if redirect is not None:
                cache_hit = True
                CACHE_HITS_TOTAL.inc()
            else:
                CACHE_MISSES_TOTAL.inc()
                redirect = await self._lookup_from_database(short_code)
                self._schedule_cache_fill(short_code, redirect)

            destination_url = redirect.destination_url.strip()
            if not is_valid_redirect_url(destination_url):
                self._logger.warning(
                    f"Blocked redirect with invalid scheme for {short_code}",
                    extra={"operation": "redirect", "short_code": short_code, "cache_hit": cache_hit},
                )
                raise InvalidRedirectError(short_code, redirect.destination_url)

            self._tasks.spawn(self._recorder.record(redirect, scan), name=f"record-scan:{short_code}")
        except ShortCodeNotFoundError:
            self._observe(RedirectOutcome.NOT_FOUND, cache_hit, start_time)
            raise
        except ShortCodeInactiveError:
            self._observe(RedirectOutcome.INACTIVE, cache_hit, start_time)
            raise
        except InvalidRedirectError:
            self._observe(RedirectOutcome.INVALID_REDIRECT, cache_hit, start_time)
            raise
        except StoreUnavailableError:
            self._observe(RedirectOutcome.STORE_UNAVAILABLE, cache_hit, start_time)
            raise

        self._observe(RedirectOutcome.REDIRECTED, cache_hit, start_time)
        return ResolvedRedirect(
            destination_url=destination_url,
            qr_resource_id=redirect.qr_resource_id,
            organization_id=redirect.organization_id,
            cache_hit=cache_hit,
        )

    async def _lookup_from_cache(self, short_code: str) -> CachedRedirect | None:
        if not self._cache_enabled:
            return None
        try:
            cached = await self._cache.get(f"{REDIRECT_KEY_PREFIX}{short_code}")
            if not cached:
                return None
            return CachedRedirect.model_validate_json(cached)
        except Exception as exc:
            CACHE_ERRORS_TOTAL.labels(operation="get").inc()
            self._logger.warning(f"KV cache error for {short_code}: {exc}")
            return None

    async def _lookup_from_database(self, short_code: str) -> CachedRedirect:
        try:
            result = await self._db.execute(
                select(ShortCodeMapping).where(ShortCodeMapping.short_code == short_code)
            )
            mapping = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            self._logger.error(
                f"Redirect lookup failed for {short_code}: {exc}",
                extra={"operation": "redirect", "short_code": short_code, "error": "store_unavailable"},
            )
            raise StoreUnavailableError(f"Store unavailable while resolving '{short_code}'") from exc

        if mapping is None:
            raise ShortCodeNotFoundError(short_code)
        if not mapping.is_active:
            raise ShortCodeInactiveError(short_code)
        return CachedRedirect.from_mapping(mapping)

    def _schedule_cache_fill(self, short_code: str, redirect: CachedRedirect) -> None:
        if not self._cache_enabled:
            return
        self._tasks.spawn(self._write_cache(short_code, redirect), name=f"cache-fill:{short_code}")

    async def _write_cache(self, short_code: str, redirect: CachedRedirect) -> None:
        try:
            await self._cache.set(
                f"{REDIRECT_KEY_PREFIX}{short_code}",
                redirect.model_dump_json(),
                ex=self._settings.REDIRECT_CACHE_TTL_SECONDS,
            )
        except Exception as exc:
            CACHE_ERRORS_TOTAL.labels(operation="set").inc()
            self._logger.warning(f"KV cache write failed for {short_code}: {exc}")

    def _observe(self, outcome: RedirectOutcome, cache_hit: bool, start_time: float) -> None:
        REDIRECT_LOOKUP_DURATION.observe(time.perf_counter() - start_time)
        REDIRECT_REQUESTS_TOTAL.labels(
            outcome=outcome,
            cache_hit=CacheStatus.HIT if cache_hit else CacheStatus.MISS,
        ).inc()
