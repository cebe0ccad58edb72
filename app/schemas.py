"""Pydantic schemas for cache payloads, request metadata and API responses.

Schema Hierarchy
=================
::
    CachedRedirect (Redis value under redirect:<code>)
    ├─ destination_url: str
    ├─ qr_resource_id: str
    └─ organization_id: str | None

    CachedDomainMapping (Redis value under domain:<hostname>)
    └─ organization_id: str

    ScanRequest (request metadata handed to the detached recorder)
    ├─ user_agent / client_ip / country / city
    └─ received_at: datetime

    QRCodeCreate / QRCodeUpdate / DomainCreate (API input)

    QRCodeResponse / UsageResponse / ScanAnalyticsResponse / DomainResponse /
    DomainVerifyResponse / DomainResolveResponse / HealthResponse (API output)

How to Use
===========
**Step 1 — Cache round trip**::
    payload = CachedRedirect.from_mapping(mapping)
    await cache.set(key, payload.model_dump_json(), ex=ttl)
    cached = CachedRedirect.model_validate_json(raw)

**Step 2 — Input validation**::
    @router.post("/api/domains")
    async def add_domain(payload: DomainCreate): ...

Key Behaviours
===============
- Cache payloads tolerate missing optional fields so older entries stay readable.
- Destination URLs are trimmed here; their scheme is checked by the routes.
- Domain names are trimmed and lower-cased here; hostname validity is checked by the domain service.
- All datetime fields are timezone-aware.
"""

import datetime

from pydantic import BaseModel, Field, field_validator

from app.enums import DomainStatus, HealthStatus

__all__ = [
    "CachedDomainMapping",
    "CachedRedirect",
    "DomainCreate",
    "DomainResolveResponse",
    "DomainResponse",
    "DomainVerifyResponse",
    "HealthResponse",
    "QRCodeCreate",
    "QRCodeResponse",
    "QRCodeUpdate",
    "ScanAnalyticsResponse",
    "ScanRequest",
    "UsageResponse",
]


class CachedRedirect(BaseModel):
    """Redis cache projection of a short-code mapping."""

    destination_url: str
    qr_resource_id: str
    organization_id: str | None = None

    @classmethod
    def from_mapping(cls, mapping) -> "CachedRedirect":
        return cls(
            destination_url=mapping.destination_url,
            qr_resource_id=mapping.id,
            organization_id=mapping.organization_id,
        )


class CachedDomainMapping(BaseModel):
    organization_id: str


class ScanRequest(BaseModel):
    """Request metadata captured before the response is sent.

    The detached recorder only ever sees this snapshot, never the live request.
    """

    user_agent: str | None = None
    client_ip: str | None = None
    country: str | None = None
    city: str | None = None
    received_at: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


class QRCodeCreate(BaseModel):
    destination_url: str = Field(..., min_length=1, max_length=2048)

    @field_validator("destination_url")
    @classmethod
    def strip_destination(cls, v: str) -> str:
        return v.strip()


class QRCodeUpdate(BaseModel):
    destination_url: str | None = Field(default=None, min_length=1, max_length=2048)
    is_active: bool | None = None

    @field_validator("destination_url")
    @classmethod
    def strip_destination(cls, v: str | None) -> str | None:
        return v.strip() if v is not None else v


class QRCodeResponse(BaseModel):
    id: str
    short_code: str
    short_url: str
    destination_url: str
    organization_id: str | None = None
    is_active: bool
    created_at: datetime.datetime | None = None

    @classmethod
    def from_mapping(cls, mapping, base_url: str) -> "QRCodeResponse":
        return cls(
            id=mapping.id,
            short_code=mapping.short_code,
            short_url=f"{base_url.rstrip('/')}/r/{mapping.short_code}",
            destination_url=mapping.destination_url,
            organization_id=mapping.organization_id,
            is_active=mapping.is_active,
            created_at=mapping.created_at,
        )


class UsageResponse(BaseModel):
    organization_id: str
    month: datetime.date
    scans_count: int


class ScanAnalyticsResponse(BaseModel):
    short_code: str
    days: int
    total_scans: int
    unique_visitors: int
    by_device: dict[str, int]
    by_country: dict[str, int]
    by_browser: dict[str, int]
    by_os: dict[str, int]


class DomainCreate(BaseModel):
    domain: str = Field(..., min_length=1, max_length=253)

    @field_validator("domain")
    @classmethod
    def strip_domain(cls, v: str) -> str:
        return v.strip().lower()


class DomainResponse(BaseModel):
    id: str
    organization_id: str
    domain: str
    status: DomainStatus
    cname_target: str | None = None
    verified_at: datetime.datetime | None = None
    last_check_at: datetime.datetime | None = None
    last_check_error: str | None = None

    model_config = {"from_attributes": True}


class DomainVerifyResponse(BaseModel):
    domain: DomainResponse
    already_verified: bool = False


class DomainResolveResponse(BaseModel):
    domain: str
    organization_id: str


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
