"""Monthly usage aggregation tests against a real (SQLite) store."""

import asyncio
import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from app.models import UsageRecord
from app.usage_service import UsageAggregator, month_start


@pytest.fixture
def usage(session_factory, logger) -> UsageAggregator:
    return UsageAggregator(session_factory, logger)


async def _rows(session_factory) -> list[UsageRecord]:
    async with session_factory() as session:
        result = await session.execute(select(UsageRecord).order_by(UsageRecord.month))
        return list(result.scalars().all())


def test_month_start():
    assert month_start(datetime.date(2025, 1, 31)) == datetime.date(2025, 1, 1)
    moment = datetime.datetime(2025, 2, 1, 0, 30, tzinfo=datetime.timezone(datetime.timedelta(hours=2)))
    # 2025-01-31 22:30 UTC
    assert month_start(moment) == datetime.date(2025, 1, 1)


@pytest.mark.asyncio
async def test_first_scan_creates_row(usage, session_factory):
    assert await usage.increment("org-1", datetime.date(2025, 1, 1)) is True

    rows = await _rows(session_factory)
    assert [(r.organization_id, r.month, r.scans_count) for r in rows] == [("org-1", datetime.date(2025, 1, 1), 1)]


@pytest.mark.asyncio
async def test_increments_accumulate_per_month(usage, session_factory, db_session):
    for _ in range(3):
        await usage.increment("org-1", datetime.date(2025, 1, 15))
    await usage.increment("org-1", datetime.date(2025, 2, 3))

    assert await usage.get_usage(db_session, "org-1", datetime.date(2025, 1, 1)) == 3
    assert await usage.get_usage(db_session, "org-1", datetime.date(2025, 2, 1)) == 1
    assert await usage.get_usage(db_session, "org-2", datetime.date(2025, 1, 1)) == 0


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(usage, db_session):
    month = datetime.date(2025, 1, 1)

    results = await asyncio.gather(*(usage.increment("org-1", month) for _ in range(50)))

    assert all(results)
    assert await usage.get_usage(db_session, "org-1", month) == 50


@pytest.mark.asyncio
async def test_store_failure_is_logged_not_raised():
    failing_factory = MagicMock(side_effect=RuntimeError("pool exhausted"))
    logger = MagicMock()
    usage = UsageAggregator(failing_factory, logger)

    assert await usage.increment("org-1") is False
    logger.error.assert_called_once()
