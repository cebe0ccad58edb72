"""Scan event recording tests."""

import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from app.classification import hash_ip
from app.models import ScanEvent
from app.scan_service import ScanEventRecorder
from app.schemas import CachedRedirect, ScanRequest
from app.usage_service import UsageAggregator

ANDROID_TABLET = (
    "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def redirect() -> CachedRedirect:
    return CachedRedirect(destination_url="https://example.com", qr_resource_id="qr-1", organization_id="org-1")


def test_build_event_anonymizes_and_classifies(session_factory, settings, logger, redirect):
    recorder = ScanEventRecorder(session_factory, MagicMock(spec=UsageAggregator), settings, logger)
    scan = ScanRequest(user_agent=ANDROID_TABLET, client_ip="198.51.100.7", country="FR", city="Paris")

    event = recorder.build_event(redirect, scan)

    assert event.qr_code_id == "qr-1"
    assert event.device_type == "tablet"
    assert event.country_code == "FR"
    assert event.city == "Paris"
    assert event.ip_hash == hash_ip("198.51.100.7", "test-salt")
    assert "198.51.100.7" not in (event.ip_hash or "")


def test_build_event_without_metadata(session_factory, settings, logger, redirect):
    recorder = ScanEventRecorder(session_factory, MagicMock(spec=UsageAggregator), settings, logger)

    event = recorder.build_event(redirect, ScanRequest())

    assert event.device_type == "unknown"
    assert event.user_agent is None
    assert event.ip_hash is None


@pytest.mark.asyncio
async def test_record_inserts_row_and_increments_usage(session_factory, settings, logger, redirect):
    usage = AsyncMock(spec=UsageAggregator)
    recorder = ScanEventRecorder(session_factory, usage, settings, logger)
    received_at = datetime.datetime(2025, 5, 20, 12, 0, tzinfo=datetime.timezone.utc)

    assert await recorder.record(redirect, ScanRequest(received_at=received_at)) is True

    async with session_factory() as session:
        events = (await session.execute(select(ScanEvent))).scalars().all()
    assert len(events) == 1
    usage.increment.assert_awaited_once_with("org-1", datetime.date(2025, 5, 1))


@pytest.mark.asyncio
async def test_record_without_organization_skips_usage(session_factory, settings, logger):
    usage = AsyncMock(spec=UsageAggregator)
    recorder = ScanEventRecorder(session_factory, usage, settings, logger)
    redirect = CachedRedirect(destination_url="https://example.com", qr_resource_id="qr-1")

    assert await recorder.record(redirect, ScanRequest()) is True
    usage.increment.assert_not_awaited()


@pytest.mark.asyncio
async def test_insert_failure_is_swallowed_and_skips_usage(settings, redirect):
    failing_factory = MagicMock(side_effect=RuntimeError("database is locked"))
    usage = AsyncMock(spec=UsageAggregator)
    logger = MagicMock()
    recorder = ScanEventRecorder(failing_factory, usage, settings, logger)

    assert await recorder.record(redirect, ScanRequest()) is False
    usage.increment.assert_not_awaited()
    logger.error.assert_called_once()
