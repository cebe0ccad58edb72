"""Best-effort scan event recording.

Flow Diagram — record()
=======================
::
    ┌──────────────────────────────┐
    │ detached task from redirect  │
    └──────────────┬───────────────┘
                   ▼
    ┌──────────────────────────────┐
    │ classify device (UA table)   │
    │ hash client IP (salt:ip)     │
    └──────────────┬───────────────┘
                   ▼
    ┌──────────────────────────────┐
    │ INSERT scan_events row       │
    └──────────────┬───────────────┘
            OK?    │
    ┌──────────────┴──────────────┐
    │ YES                          │ NO
    ▼                              ▼
 organization_id set?          log + drop
    │ YES
    ▼
 UsageAggregator.increment()

Key Behaviours
===============
- Runs after the redirect response; its outcome is never visible to the caller.
- Zero retries: one insert attempt, one usage upsert attempt.
- Client IPs are hashed before they reach the database.
"""

import logging
import time

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.classification import classify_device, hash_ip
from app.config import Settings
from app.models import ScanEvent
from app.schemas import CachedRedirect, ScanRequest
from app.usage_service import UsageAggregator, month_start

__all__ = ["ScanEventRecorder"]

SCAN_EVENTS_RECORDED_TOTAL = Counter(
    "qrlink_scan_events_recorded_total",
    "Scan events persisted",
)
SCAN_EVENTS_FAILED_TOTAL = Counter(
    "qrlink_scan_events_failed_total",
    "Scan events dropped after an insert failure",
)


class ScanEventRecorder:
    """Persist one anonymized ScanEvent per resolved redirect."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        usage: UsageAggregator,
        settings: Settings,
        logger: logging.Logger | logging.LoggerAdapter,
    ):
        self._session_factory = session_factory
        self._usage = usage
        self._settings = settings
        self._logger = logger

    def build_event(self, redirect: CachedRedirect, scan: ScanRequest) -> ScanEvent:
        return ScanEvent(
            qr_code_id=redirect.qr_resource_id,
            scanned_at=scan.received_at,
            country_code=scan.country,
            city=scan.city,
            device_type=classify_device(scan.user_agent).value,
            user_agent=scan.user_agent or None,
            ip_hash=hash_ip(scan.client_ip, self._settings.IP_HASH_SALT),
        )

    async def record(self, redirect: CachedRedirect, scan: ScanRequest) -> bool:
        """Insert the scan row, then bump the organization's monthly usage.

        Returns:
            bool: True when the scan row was stored.
        """
        start_time = time.perf_counter()
        event = self.build_event(redirect, scan)
        try:
            async with self._session_factory() as session:
                session.add(event)
                await session.commit()
        except Exception as exc:
            SCAN_EVENTS_FAILED_TOTAL.inc()
            self._logger.error(
                f"Failed to log scan event for {redirect.qr_resource_id}: {exc}",
                extra={"operation": "record_scan", "qr_resource_id": redirect.qr_resource_id},
            )
            return False

        SCAN_EVENTS_RECORDED_TOTAL.inc()
        self._logger.debug(
            f"Scan recorded for {redirect.qr_resource_id} in {time.perf_counter() - start_time:.3f}s"
        )

        if redirect.organization_id:
            await self._usage.increment(redirect.organization_id, month_start(scan.received_at))
        return True
