"""FastAPI route definitions for the QR redirect service.

API Endpoint Overview
=====================
::
    GET  /health
        └─ HealthResponse (200)

    GET  /r/:short_code
        └─ 302 Location | 404 text | 410 HTML | 400 text | 500 text

    X-API-Key required, daily rate limit (X-RateLimit-Limit / -Remaining, 429):
    GET    /api/usage?month=YYYY-MM              → UsageResponse
    POST   /api/qr-codes                         → QRCodeResponse (201) | 400/503
    PATCH  /api/qr-codes/:short_code             → QRCodeResponse | 400/404
    GET    /api/qr-codes/:short_code/analytics   → ScanAnalyticsResponse
    GET    /api/domains                          → DomainResponse | 404
    POST   /api/domains                          → DomainResponse (201) | 400/409/502
    POST   /api/domains/verify                   → DomainVerifyResponse | 404/502
    DELETE /api/domains                          → 204 | 404
    GET    /api/domains/resolve/:hostname        → DomainResolveResponse | 404

Request Flow Diagram — redirect
===============================
::
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │ GET /r/:code├────►│ ScanRequest from ├────►│ RedirectResolver │
    └─────────────┘     │ request headers  │     │ .resolve()       │
                        └──────────────────┘     └────────┬─────────┘
                                                          │ result / QRLinkError
                                                          ▼
                                                 status code + body

Key Behaviours
===============
- The redirect path answers with plain text or a fixed HTML page, never JSON.
- Detached work (scan recording, cache fill) is already scheduled when the
  redirect response is built.
- The JSON API maps service errors to ``HTTPException`` with a ``detail``.
"""

import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from sqlalchemy import text

from app.analytics_service import ScanAnalyticsService
from app.classification import extract_geo
from app.credentials import ApiCredential
from app.dependencies import (
    RequestContext,
    enforce_rate_limit,
    get_analytics_service,
    get_domain_mapping_cache,
    get_domain_service,
    get_mapping_repository,
    get_redirect_resolver,
    get_request_context,
    get_usage_aggregator,
)
from app.domain_service import CustomDomainService, DomainMappingCache, normalize_hostname
from app.enums import HealthStatus
from app.errors import (
    DomainConflictError,
    DomainNotFoundError,
    HostingProviderError,
    InvalidDomainError,
    InvalidRedirectError,
    ShortCodeAllocationError,
    ShortCodeInactiveError,
    ShortCodeNotFoundError,
    StoreUnavailableError,
)
from app.mapping_repository import ShortCodeMappingRepository
from app.redirect_service import INACTIVE_PAGE_HTML, RedirectResolver, is_valid_redirect_url
from app.schemas import (
    DomainCreate,
    DomainResolveResponse,
    DomainResponse,
    DomainVerifyResponse,
    HealthResponse,
    QRCodeCreate,
    QRCodeResponse,
    QRCodeUpdate,
    ScanAnalyticsResponse,
    ScanRequest,
    UsageResponse,
)
from app.usage_service import UsageAggregator, month_start

__all__ = ["router"]

router = APIRouter()

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    if ctx.cache is None:
        cache_status = HealthStatus.DISABLED
    else:
        try:
            await ctx.cache.ping()
        except Exception as e:
            ctx.logger.error(f"Cache health check failed: {e}")
            cache_status = HealthStatus.UNHEALTHY

    # The cache is optional; only a broken one degrades the service.
    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is not HealthStatus.UNHEALTHY
        else HealthStatus.UNHEALTHY
    )
    ctx.logger.debug(f"Health check completed: {status.value}")
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.get("/r/{short_code}", tags=["redirect"], response_model=None)
async def redirect_short_code(
    short_code: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    resolver: RedirectResolver = Depends(get_redirect_resolver),
) -> Response:
    ctx.add_tag("redirect")
    country, city = extract_geo(request.headers, ctx.settings.GEO_COUNTRY_HEADER, ctx.settings.GEO_CITY_HEADER)
    scan = ScanRequest(user_agent=ctx.user_agent, client_ip=ctx.client_ip, country=country, city=city)

    try:
        resolved = await resolver.resolve(short_code, scan)
    except ShortCodeNotFoundError:
        return PlainTextResponse("QR code not found", status_code=404)
    except ShortCodeInactiveError:
        return HTMLResponse(INACTIVE_PAGE_HTML, status_code=410)
    except InvalidRedirectError:
        return PlainTextResponse("Invalid redirect URL", status_code=400)
    except StoreUnavailableError:
        return PlainTextResponse("Internal server error", status_code=500)

    ctx.logger.info(
        f"Redirect: {short_code} -> {resolved.destination_url}",
        extra={
            "operation": "redirect",
            "short_code": short_code,
            "cache_hit": resolved.cache_hit,
            "duration_ms": ctx.get_duration(),
        },
    )
    return RedirectResponse(url=resolved.destination_url, status_code=302)


@router.get("/api/usage", response_model=UsageResponse, tags=["usage"])
async def get_usage(
    month: str | None = Query(default=None, pattern=MONTH_PATTERN),
    ctx: RequestContext = Depends(get_request_context),
    credential: ApiCredential = Depends(enforce_rate_limit),
    usage: UsageAggregator = Depends(get_usage_aggregator),
) -> UsageResponse:
    if month is None:
        period = month_start()
    else:
        year, month_number = month.split("-")
        period = datetime.date(int(year), int(month_number), 1)

    scans = await usage.get_usage(ctx.database, credential.organization_id, period)
    return UsageResponse(organization_id=credential.organization_id, month=period, scans_count=scans)


@router.post("/api/qr-codes", response_model=QRCodeResponse, status_code=201, tags=["qr-codes"])
async def create_qr_code(
    payload: QRCodeCreate,
    ctx: RequestContext = Depends(get_request_context),
    credential: ApiCredential = Depends(enforce_rate_limit),
    repository: ShortCodeMappingRepository = Depends(get_mapping_repository),
) -> QRCodeResponse:
    if not is_valid_redirect_url(payload.destination_url):
        raise HTTPException(status_code=400, detail="Invalid destination_url format")

    try:
        mapping = await repository.create(payload.destination_url, credential.organization_id)
    except ShortCodeAllocationError as exc:
        ctx.logger.error(f"Short code allocation failed: {exc}", extra={"operation": "create_qr_code"})
        raise HTTPException(status_code=503, detail="Failed to generate unique short code") from exc

    ctx.logger.info(
        f"QR code created: {mapping.short_code}",
        extra={"operation": "create_qr_code", "organization_id": credential.organization_id},
    )
    return QRCodeResponse.from_mapping(mapping, ctx.settings.BASE_URL)


@router.patch("/api/qr-codes/{short_code}", response_model=QRCodeResponse, tags=["qr-codes"])
async def update_qr_code(
    short_code: str,
    payload: QRCodeUpdate,
    ctx: RequestContext = Depends(get_request_context),
    credential: ApiCredential = Depends(enforce_rate_limit),
    repository: ShortCodeMappingRepository = Depends(get_mapping_repository),
) -> QRCodeResponse:
    if payload.destination_url is None and payload.is_active is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    if payload.destination_url is not None and not is_valid_redirect_url(payload.destination_url):
        raise HTTPException(status_code=400, detail="Invalid destination_url format")

    organization_id = credential.organization_id
    try:
        if payload.destination_url is not None:
            mapping = await repository.update_destination(short_code, payload.destination_url, organization_id)
        if payload.is_active is not None:
            mapping = await repository.set_active(short_code, payload.is_active, organization_id)
    except ShortCodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail="QR code not found") from exc

    ctx.logger.info(
        f"QR code updated: {short_code}",
        extra={"operation": "update_qr_code", "organization_id": organization_id},
    )
    return QRCodeResponse.from_mapping(mapping, ctx.settings.BASE_URL)


@router.get("/api/qr-codes/{short_code}/analytics", response_model=ScanAnalyticsResponse, tags=["analytics"])
async def get_scan_analytics(
    short_code: str,
    days: int | None = Query(default=None, ge=1, le=365),
    ctx: RequestContext = Depends(get_request_context),
    credential: ApiCredential = Depends(enforce_rate_limit),
    analytics: ScanAnalyticsService = Depends(get_analytics_service),
) -> ScanAnalyticsResponse:
    try:
        return await analytics.summarize(
            credential.organization_id,
            short_code,
            days or ctx.settings.ANALYTICS_DEFAULT_DAYS,
        )
    except ShortCodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail="QR code not found") from exc


@router.get("/api/domains", response_model=DomainResponse, tags=["domains"])
async def get_domain(
    credential: ApiCredential = Depends(enforce_rate_limit),
    domains: CustomDomainService = Depends(get_domain_service),
) -> DomainResponse:
    domain = await domains.get_for_organization(credential.organization_id)
    if domain is None:
        raise HTTPException(status_code=404, detail="No custom domain configured")
    return DomainResponse.model_validate(domain)


@router.post("/api/domains", response_model=DomainResponse, status_code=201, tags=["domains"])
async def add_domain(
    payload: DomainCreate,
    ctx: RequestContext = Depends(get_request_context),
    credential: ApiCredential = Depends(enforce_rate_limit),
    domains: CustomDomainService = Depends(get_domain_service),
) -> DomainResponse:
    try:
        domain = await domains.register(credential.organization_id, payload.domain)
    except InvalidDomainError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DomainConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except HostingProviderError as exc:
        raise HTTPException(status_code=502, detail="Failed to register domain with hosting provider") from exc

    ctx.logger.info(
        f"Custom domain added: {domain.domain}",
        extra={"operation": "add_domain", "organization_id": credential.organization_id},
    )
    return DomainResponse.model_validate(domain)


@router.post("/api/domains/verify", response_model=DomainVerifyResponse, tags=["domains"])
async def verify_domain(
    credential: ApiCredential = Depends(enforce_rate_limit),
    domains: CustomDomainService = Depends(get_domain_service),
) -> DomainVerifyResponse:
    try:
        domain, already_verified = await domains.verify(credential.organization_id)
    except DomainNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HostingProviderError as exc:
        raise HTTPException(status_code=502, detail="Failed to verify domain. Please try again later.") from exc
    return DomainVerifyResponse(domain=DomainResponse.model_validate(domain), already_verified=already_verified)


@router.delete("/api/domains", status_code=204, tags=["domains"])
async def remove_domain(
    credential: ApiCredential = Depends(enforce_rate_limit),
    domains: CustomDomainService = Depends(get_domain_service),
) -> None:
    try:
        await domains.remove(credential.organization_id)
    except DomainNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/api/domains/resolve/{hostname}", response_model=DomainResolveResponse, tags=["domains"])
async def resolve_domain(
    hostname: str,
    credential: ApiCredential = Depends(enforce_rate_limit),
    mapping_cache: DomainMappingCache = Depends(get_domain_mapping_cache),
) -> DomainResolveResponse:
    try:
        organization_id = await mapping_cache.lookup(hostname)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    if organization_id is None:
        raise HTTPException(status_code=404, detail="Domain not found or not verified")
    return DomainResolveResponse(domain=normalize_hostname(hostname), organization_id=organization_id)
