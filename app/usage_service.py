"""Monthly per-organization scan usage aggregation.

Flow Diagram — increment()
==========================
::
    ┌───────────────────────────┐
    │ ScanEventRecorder success │
    └─────────────┬─────────────┘
                  ▼
    ┌───────────────────────────────────────────────┐
    │ INSERT INTO usage_records (org, month, 1)      │
    │ ON CONFLICT (organization_id, month)           │
    │ DO UPDATE SET scans_count = scans_count + 1    │
    └─────────────┬─────────────────────────────────┘
           OK?    │
    ┌─────────────┴─────────────┐
    │ YES                        │ NO
    ▼                            ▼
  commit                    log + drop (scan already recorded)

Key Behaviours
===============
- One statement per increment: concurrent scans for the same organization and
  month serialize inside the database, never in application code.
- The first scan of a month creates the row with count 1.
- Failures never propagate to the scan or redirect path.
"""

import datetime
import logging
import time

from prometheus_client import Counter
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.enums import RequestStatus
from app.models import UsageRecord

__all__ = ["UsageAggregator", "month_start"]

USAGE_INCREMENTS_TOTAL = Counter(
    "qrlink_usage_increments_total",
    "Monthly usage counter upserts",
    ["status"],
)


def month_start(moment: datetime.date | datetime.datetime | None = None) -> datetime.date:
    if moment is None:
        moment = datetime.datetime.now(datetime.timezone.utc)
    if isinstance(moment, datetime.datetime):
        moment = moment.astimezone(datetime.timezone.utc).date() if moment.tzinfo else moment.date()
    return moment.replace(day=1)


def _upsert_statement(dialect_name: str, organization_id: str, month: datetime.date):
    insert = sqlite_insert if dialect_name == "sqlite" else pg_insert
    stmt = insert(UsageRecord).values(organization_id=organization_id, month=month, scans_count=1)
    return stmt.on_conflict_do_update(
        index_elements=["organization_id", "month"],
        set_={"scans_count": UsageRecord.scans_count + 1, "updated_at": func.now()},
    )


class UsageAggregator:
    """Atomic monthly scan counter per organization."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], logger: logging.Logger | logging.LoggerAdapter):
        self._session_factory = session_factory
        self._logger = logger

    async def increment(self, organization_id: str, month: datetime.date | None = None) -> bool:
        """Add one scan to ``(organization_id, month)``.

        Args:
            organization_id: Organization that owns the scanned code.
            month: First-of-month date; defaults to the current UTC month.

        Returns:
            bool: True when the upsert committed, False when it failed (logged).
        """
        month = month_start(month)
        start_time = time.perf_counter()
        try:
            async with self._session_factory() as session:
                dialect_name = session.bind.dialect.name
                await session.execute(_upsert_statement(dialect_name, organization_id, month))
                await session.commit()
        except Exception as exc:
            USAGE_INCREMENTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(
                f"Usage increment failed for organization {organization_id}: {exc}",
                extra={"operation": "usage_increment", "organization_id": organization_id, "month": str(month)},
            )
            return False

        USAGE_INCREMENTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.debug(
            f"Usage incremented for {organization_id} ({month}) in {time.perf_counter() - start_time:.3f}s"
        )
        return True

    async def get_usage(self, db: AsyncSession, organization_id: str, month: datetime.date | None = None) -> int:
        month = month_start(month)
        result = await db.execute(
            select(UsageRecord.scans_count).where(
                UsageRecord.organization_id == organization_id,
                UsageRecord.month == month,
            )
        )
        return result.scalar_one_or_none() or 0
