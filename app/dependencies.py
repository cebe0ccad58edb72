"""Dependency injection with a singleton service manager.

Shared resources (settings, logger, optional Redis client, session factory,
background task runner, hosting-provider client, scan recorder) live on one
``ServiceManager``; everything per request hangs off a ``RequestContext`` and
services are built from it with ``from_context``.

Dependency Graph
================
::
    get_service_manager ──┐
    get_db ───────────────┼──► get_request_context ──► get_redirect_resolver
                          │                        ├─► get_mapping_repository
                          │                        ├─► get_rate_limiter
                          │                        ├─► get_api_key_authenticator ──► get_api_credential
                          │                        ├─► get_domain_service / get_domain_mapping_cache
                          │                        └─► get_analytics_service / get_usage_aggregator
                          │
    get_api_credential + get_rate_limiter ──► enforce_rate_limit (429 / X-RateLimit-*)
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analytics_service import ScanAnalyticsService
from app.background import BackgroundTaskRunner
from app.classification import extract_client_ip
from app.config import Settings, get_settings
from app.credentials import ApiCredential, ApiKeyAuthenticator
from app.database import async_session, get_db
from app.domain_service import CustomDomainService, DomainMappingCache
from app.errors import InvalidApiKeyError
from app.hosting_provider import HostingProviderClient
from app.mapping_repository import ShortCodeMappingRepository
from app.rate_limit import RateLimiter, apply_rate_limit_headers, rate_limit_headers
from app.redirect_service import RedirectResolver
from app.redis import get_redis
from app.scan_service import ScanEventRecorder
from app.usage_service import UsageAggregator


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton holder for resources shared by every request."""

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if not self._initialized:
            settings = get_settings()
            self.configure(
                settings=settings,
                cache=await get_redis(),
                session_factory=async_session,
                hosting_provider=HostingProviderClient.from_settings(settings),
            )

    def configure(
        self,
        settings: Settings,
        cache: redis.Redis | None,
        session_factory: async_sessionmaker[AsyncSession],
        hosting_provider: HostingProviderClient,
    ) -> None:
        self.settings = settings
        self.logger = self._setup_logger()
        self.cache = cache
        self.session_factory = session_factory
        self.hosting_provider = hosting_provider
        self.tasks = BackgroundTaskRunner(self.logger)
        self.usage = UsageAggregator(session_factory, self.logger)
        self.recorder = ScanEventRecorder(session_factory, self.usage, settings, self.logger)
        if cache is None:
            self.logger.warning("Redis not configured: redirect cache disabled, rate limiting fails open")
        self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("qrlink")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    async def cleanup(self) -> None:
        """Drain detached work, then release shared clients."""
        if not self._initialized:
            return
        cancelled = await self.tasks.drain(self.settings.BACKGROUND_TASK_GRACE_SECONDS)
        if cancelled:
            self.logger.warning(f"{cancelled} detached task(s) did not finish before shutdown")
        await self.hosting_provider.close()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request view over the shared resources.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        trace_id: Correlation ID for distributed tracing
        user_agent: Client user agent string
        client_ip: Client IP from X-Forwarded-For / X-Real-IP only; None without them
        remote_addr: Socket peer address, for log context only
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    remote_addr: Optional[str] = None
    start_time: float = field(default_factory=lambda: time.time())
    tags: list[str] = field(default_factory=list)

    @property
    def cache(self) -> redis.Redis | None:
        return self.service_manager.cache

    @property
    def tasks(self) -> BackgroundTaskRunner:
        return self.service_manager.tasks

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.service_manager.session_factory

    @property
    def hosting_provider(self) -> HostingProviderClient:
        return self.service_manager.hosting_provider

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger with request context attached."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip or self.remote_addr,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        trace_id=request.headers.get("x-trace-id"),
        user_agent=request.headers.get("user-agent"),
        client_ip=extract_client_ip(request.headers),
        remote_addr=request.client.host if request.client else None,
    )


def get_redirect_resolver(ctx: RequestContext = Depends(get_request_context)) -> RedirectResolver:
    return RedirectResolver.from_context(ctx, recorder=ctx.service_manager.recorder)


def get_mapping_repository(ctx: RequestContext = Depends(get_request_context)) -> ShortCodeMappingRepository:
    return ShortCodeMappingRepository.from_context(ctx)


def get_rate_limiter(ctx: RequestContext = Depends(get_request_context)) -> RateLimiter:
    return RateLimiter.from_context(ctx)


def get_api_key_authenticator(ctx: RequestContext = Depends(get_request_context)) -> ApiKeyAuthenticator:
    return ApiKeyAuthenticator.from_context(ctx)


def get_domain_mapping_cache(ctx: RequestContext = Depends(get_request_context)) -> DomainMappingCache:
    return DomainMappingCache.from_context(ctx)


def get_domain_service(ctx: RequestContext = Depends(get_request_context)) -> CustomDomainService:
    return CustomDomainService.from_context(ctx)


def get_analytics_service(ctx: RequestContext = Depends(get_request_context)) -> ScanAnalyticsService:
    return ScanAnalyticsService.from_context(ctx)


def get_usage_aggregator(ctx: RequestContext = Depends(get_request_context)) -> UsageAggregator:
    return ctx.service_manager.usage


async def get_api_credential(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    ctx: RequestContext = Depends(get_request_context),
    authenticator: ApiKeyAuthenticator = Depends(get_api_key_authenticator),
) -> ApiCredential:
    try:
        return await authenticator.authenticate(x_api_key)
    except InvalidApiKeyError as exc:
        ctx.logger.warning(f"API key rejected: {exc}", extra={"operation": "authenticate"})
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def enforce_rate_limit(
    response: Response,
    credential: ApiCredential = Depends(get_api_credential),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ApiCredential:
    """Count the call against the key's daily quota; 429 once it is used up."""
    result = await limiter.check(credential.key_id, credential.rate_limit_per_day)
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Try again tomorrow.",
            headers=rate_limit_headers(result),
        )
    apply_rate_limit_headers(response.headers, result)
    return credential
