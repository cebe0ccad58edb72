"""SQLAlchemy ORM models for the QR redirect service.

This module defines the database schema using SQLAlchemy declarative models
with proper indexing and timestamp management.

Data Model Layout
=================
::
    qr_codes table
    ├─ id (VARCHAR(36) PRIMARY KEY)            ← qr_resource_id
    ├─ short_code (VARCHAR(6) UNIQUE, INDEXED)
    ├─ destination_url (TEXT NOT NULL)
    ├─ organization_id (VARCHAR(36) NULL, INDEXED)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    ├─ created_at / updated_at (TIMESTAMPTZ)

    scan_events table (append-only)
    ├─ id (VARCHAR(36) PRIMARY KEY)
    ├─ qr_code_id (VARCHAR(36), INDEXED)
    ├─ scanned_at (TIMESTAMPTZ, INDEXED)
    ├─ country_code / city (NULL)
    ├─ device_type (VARCHAR(16))
    ├─ user_agent (TEXT NULL)
    └─ ip_hash (VARCHAR(64) NULL)

    usage_records table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ organization_id + month (UNIQUE)
    └─ scans_count (INTEGER)

    custom_domains table
    ├─ id (VARCHAR(36) PRIMARY KEY)
    ├─ organization_id (UNIQUE)
    ├─ domain (UNIQUE)
    ├─ status (unverified | verifying | verified)
    ├─ cname_target, verified_at, last_check_at, last_check_error

    api_keys table
    ├─ id (VARCHAR(36) PRIMARY KEY)
    ├─ organization_id, name, key_prefix
    ├─ key_hash (VARCHAR(64) UNIQUE)
    ├─ rate_limit_per_day (INTEGER, -1 = unlimited)
    └─ is_active, expires_at, last_used_at

How to Use
===========
**Step 1 — Import**::
    from app.models import ShortCodeMapping

**Step 2 — Query by code**::
    result = await db.execute(
        select(ShortCodeMapping).where(ShortCodeMapping.short_code == "X7kP2m")
    )
    mapping = result.scalar_one_or_none()

Key Behaviours
===============
- short_code is indexed for fast lookups during redirects.
- scan_events rows are never updated or deleted here.
- usage_records carries a unique (organization_id, month) constraint so the
  monthly counter can be upserted atomically.
- IP addresses are never stored; only a salted SHA-256 digest.

Classes:
    ShortCodeMapping:  QR resource short code → destination URL.
    ScanEvent:  One anonymized scan.
    UsageRecord:  Monthly per-organization scan counter.
    CustomDomain:  Organization custom hostname with verification state.
    ApiKey:  Programmatic API credential with its daily request limit.
"""

import datetime
import uuid

from sqlalchemy import Boolean, Date, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime
from app.enums import DeviceType, DomainStatus

__all__ = ["ApiKey", "CustomDomain", "ScanEvent", "ShortCodeMapping", "UsageRecord"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ShortCodeMapping(Base):
    __tablename__ = "qr_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    short_code: Mapped[str] = mapped_column(String(6), unique=True, index=True, nullable=False)
    destination_url: Mapped[str] = mapped_column(Text, nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ShortCodeMapping(id={self.id}, short_code='{self.short_code}', is_active={self.is_active})>"


class ScanEvent(Base):
    __tablename__ = "scan_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    qr_code_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    scanned_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=_utcnow, index=True, nullable=False
    )
    country_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    device_type: Mapped[str] = mapped_column(String(16), default=DeviceType.UNKNOWN.value, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<ScanEvent(id={self.id}, qr_code_id={self.qr_code_id}, device_type='{self.device_type}')>"


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("organization_id", "month", name="uq_usage_records_org_month"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    month: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    scans_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(organization_id={self.organization_id}, month={self.month}, scans={self.scans_count})>"


class CustomDomain(Base):
    __tablename__ = "custom_domains"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    domain: Mapped[str] = mapped_column(String(253), unique=True, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=DomainStatus.UNVERIFIED.value, nullable=False)
    cname_target: Mapped[str | None] = mapped_column(String(253), nullable=True)
    verified_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_check_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_check_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<CustomDomain(domain='{self.domain}', organization_id={self.organization_id}, status='{self.status}')>"


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    rate_limit_per_day: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ApiKey(id={self.id}, key_prefix='{self.key_prefix}', organization_id={self.organization_id})>"
