"""Scan analytics summaries for the organization API.

Browser and OS are not stored on scan events; they are derived from the raw
user agent here, at query time, so the parsing tables can change without a
backfill.

Flow Diagram — summarize()
==========================
::
    SELECT qr_codes WHERE short_code = ? AND organization_id = ?
            │ none → ShortCodeNotFoundError (404)
            ▼
    SELECT scan_events WHERE qr_code_id = ? AND scanned_at >= now - days
            ▼
    count by device / country / browser / OS, distinct ip_hash
"""

import datetime
import logging
from collections import Counter as Tally
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.classification import parse_user_agent
from app.errors import ShortCodeNotFoundError
from app.models import ScanEvent, ShortCodeMapping
from app.schemas import ScanAnalyticsResponse

__all__ = ["ScanAnalyticsService"]

UNKNOWN_COUNTRY = "Unknown"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ScanAnalyticsService:
    def __init__(
        self,
        db: AsyncSession,
        logger: logging.Logger | logging.LoggerAdapter,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self._db = db
        self._logger = logger
        self._clock = clock

    @classmethod
    def from_context(cls, ctx) -> "ScanAnalyticsService":
        return cls(db=ctx.database, logger=ctx.logger)

    async def summarize(self, organization_id: str, short_code: str, days: int) -> ScanAnalyticsResponse:
        result = await self._db.execute(
            select(ShortCodeMapping.id).where(
                ShortCodeMapping.short_code == short_code,
                ShortCodeMapping.organization_id == organization_id,
            )
        )
        qr_resource_id = result.scalar_one_or_none()
        if qr_resource_id is None:
            raise ShortCodeNotFoundError(short_code)

        since = self._clock() - datetime.timedelta(days=days)
        events = (
            await self._db.execute(
                select(ScanEvent.device_type, ScanEvent.country_code, ScanEvent.user_agent, ScanEvent.ip_hash).where(
                    ScanEvent.qr_code_id == qr_resource_id,
                    ScanEvent.scanned_at >= since,
                )
            )
        ).all()

        by_device: Tally[str] = Tally()
        by_country: Tally[str] = Tally()
        by_browser: Tally[str] = Tally()
        by_os: Tally[str] = Tally()
        visitors: set[str] = set()
        for device_type, country_code, user_agent, ip_hash in events:
            parsed = parse_user_agent(user_agent)
            by_device[device_type] += 1
            by_country[country_code or UNKNOWN_COUNTRY] += 1
            by_browser[parsed.browser] += 1
            by_os[parsed.os] += 1
            if ip_hash:
                visitors.add(ip_hash)

        self._logger.debug(f"Analytics for {short_code}: {len(events)} scans over {days} days")
        return ScanAnalyticsResponse(
            short_code=short_code,
            days=days,
            total_scans=len(events),
            unique_visitors=len(visitors),
            by_device=dict(by_device),
            by_country=dict(by_country),
            by_browser=dict(by_browser),
            by_os=dict(by_os),
        )
