"""Custom domain mapping cache and verification lifecycle.

State Machine
=============
::
                 register()
                     │
                     ▼
              ┌────────────┐  check: not confirmed   ┌────────────┐
              │ unverified ├────────────────────────►│ verifying  │◄──┐
              └─────┬──────┘                         └─────┬──────┘   │ not confirmed
                    │ check: confirmed                     │          │ (reason recorded)
                    │                                      ├──────────┘
                    ▼                                      │ confirmed
              ┌────────────┐◄──────────────────────────────┘
              │  verified  │  → domain:<hostname> cached for 7 days
              └────────────┘

    provider unreachable → state unchanged, last_check_at / last_check_error
                           recorded, HostingProviderError raised (retry later)

Flow Diagram — DomainMappingCache.lookup()
==========================================
::
    Redis GET domain:<hostname> ──hit──► organization_id
            │ miss / error
            ▼
    SELECT custom_domains WHERE domain = ? AND status = 'verified'
            │ found
            ▼
    Redis SET domain:<hostname> (TTL 7d) ──► organization_id

Key Behaviours
===============
- Only verified domains ever resolve to an organization.
- Ownership changes and removals invalidate the cached mapping.
- Cache failures are logged; lookups fall back to the store.
"""

import datetime
import logging
from collections.abc import Callable

import redis.asyncio as redis
import validators
from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.enums import CacheStatus, DomainStatus
from app.errors import (
    DomainConflictError,
    DomainNotFoundError,
    HostingProviderError,
    InvalidDomainError,
    StoreUnavailableError,
)
from app.hosting_provider import HostingProviderClient
from app.models import CustomDomain
from app.schemas import CachedDomainMapping

__all__ = ["DOMAIN_KEY_PREFIX", "CustomDomainService", "DomainMappingCache", "normalize_hostname", "validate_hostname"]

DOMAIN_KEY_PREFIX = "domain:"

DOMAIN_CACHE_LOOKUPS_TOTAL = Counter(
    "qrlink_domain_cache_lookups_total",
    "Custom domain mapping lookups",
    ["cache_hit"],
)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def normalize_hostname(hostname: str) -> str:
    host = hostname.strip().lower().rstrip(".")
    # Host headers may carry a port.
    return host.split(":", 1)[0]


def validate_hostname(hostname: str) -> str:
    """Normalize ``hostname`` or raise InvalidDomainError."""
    host = normalize_hostname(hostname)
    if not validators.domain(host):
        raise InvalidDomainError("Invalid domain. Must be a valid hostname (e.g., track.acme.com)")
    return host


class DomainMappingCache:
    """Cache-aside hostname → organization mapping."""

    def __init__(
        self,
        db: AsyncSession,
        cache: redis.Redis | None,
        logger: logging.Logger | logging.LoggerAdapter,
        ttl_seconds: int = 60 * 60 * 24 * 7,
    ):
        self._db = db
        self._cache = cache
        self._cache_enabled = cache is not None
        self._logger = logger
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_context(cls, ctx) -> "DomainMappingCache":
        return cls(
            db=ctx.database,
            cache=ctx.cache,
            logger=ctx.logger,
            ttl_seconds=ctx.settings.DOMAIN_CACHE_TTL_SECONDS,
        )

    async def lookup(self, hostname: str) -> str | None:
        """Return the organization that owns ``hostname``, or None."""
        host = normalize_hostname(hostname)

        cached = await self._read(host)
        if cached is not None:
            DOMAIN_CACHE_LOOKUPS_TOTAL.labels(cache_hit=CacheStatus.HIT).inc()
            return cached
        DOMAIN_CACHE_LOOKUPS_TOTAL.labels(cache_hit=CacheStatus.MISS).inc()

        try:
            result = await self._db.execute(
                select(CustomDomain.organization_id).where(
                    CustomDomain.domain == host,
                    CustomDomain.status == DomainStatus.VERIFIED.value,
                )
            )
            organization_id = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            self._logger.error(f"Domain lookup failed for {host}: {exc}")
            raise StoreUnavailableError(f"Store unavailable while resolving domain '{host}'") from exc

        if organization_id is not None:
            await self.store(host, organization_id)
        return organization_id

    async def store(self, hostname: str, organization_id: str) -> None:
        if not self._cache_enabled:
            return
        host = normalize_hostname(hostname)
        try:
            await self._cache.set(
                f"{DOMAIN_KEY_PREFIX}{host}",
                CachedDomainMapping(organization_id=organization_id).model_dump_json(),
                ex=self._ttl_seconds,
            )
        except Exception as exc:
            self._logger.warning(f"KV domain mapping write failed for {host}: {exc}")

    async def invalidate(self, hostname: str) -> None:
        if not self._cache_enabled:
            return
        host = normalize_hostname(hostname)
        try:
            await self._cache.delete(f"{DOMAIN_KEY_PREFIX}{host}")
        except Exception as exc:
            self._logger.warning(f"KV domain mapping delete failed for {host}: {exc}")

    async def _read(self, host: str) -> str | None:
        if not self._cache_enabled:
            return None
        try:
            raw = await self._cache.get(f"{DOMAIN_KEY_PREFIX}{host}")
            if not raw:
                return None
            return CachedDomainMapping.model_validate_json(raw).organization_id
        except Exception as exc:
            self._logger.warning(f"KV domain mapping read failed for {host}: {exc}")
            return None


class CustomDomainService:
    """Registration, verification and removal of an organization's custom domain."""

    def __init__(
        self,
        db: AsyncSession,
        mapping_cache: DomainMappingCache,
        provider: HostingProviderClient,
        logger: logging.Logger | logging.LoggerAdapter,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self._db = db
        self._mapping_cache = mapping_cache
        self._provider = provider
        self._logger = logger
        self._clock = clock

    @classmethod
    def from_context(cls, ctx) -> "CustomDomainService":
        return cls(
            db=ctx.database,
            mapping_cache=DomainMappingCache.from_context(ctx),
            provider=ctx.hosting_provider,
            logger=ctx.logger,
        )

    async def get_for_organization(self, organization_id: str) -> CustomDomain | None:
        result = await self._db.execute(select(CustomDomain).where(CustomDomain.organization_id == organization_id))
        return result.scalar_one_or_none()

    async def register(self, organization_id: str, hostname: str) -> CustomDomain:
        """Create the organization's domain record in the ``unverified`` state.

        Raises:
            InvalidDomainError: Not a valid hostname.
            DomainConflictError: Organization already has a domain, or the
                hostname belongs to someone else.
            HostingProviderError: The provider could not register the domain.
        """
        host = validate_hostname(hostname)

        if await self.get_for_organization(organization_id) is not None:
            raise DomainConflictError("Organization already has a custom domain. Remove it first.")

        if await self._is_taken(host):
            raise DomainConflictError("This domain is already in use by another organization")

        if self._provider.is_configured:
            cname_target = await self._provider.add_domain(host)
            self._logger.info(f"Domain added to hosting provider: {host} (CNAME {cname_target})")
        else:
            cname_target = self._provider.default_cname_target
            self._logger.warning(f"Hosting provider not configured, skipping domain registration for {host}")

        domain = CustomDomain(
            organization_id=organization_id,
            domain=host,
            status=DomainStatus.UNVERIFIED.value,
            cname_target=cname_target,
        )
        self._db.add(domain)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            # A concurrent registration won the unique index on domain or organization.
            await self._db.rollback()
            self._logger.warning(f"Domain registration lost a race for {host}: {exc}")
            raise DomainConflictError("This domain is already in use by another organization") from exc
        await self._db.refresh(domain)
        return domain

    async def verify(self, organization_id: str) -> tuple[CustomDomain, bool]:
        """Ask the hosting provider whether DNS is in place and advance the state.

        Returns:
            tuple[CustomDomain, bool]: The updated record and whether it was
            already verified before this call.

        Raises:
            DomainNotFoundError: Organization has no domain.
            HostingProviderError: Provider unreachable; the failure is recorded
                on the record and its state is left unchanged.
        """
        domain = await self.get_for_organization(organization_id)
        if domain is None:
            raise DomainNotFoundError("No custom domain configured")

        if domain.status == DomainStatus.VERIFIED:
            return domain, True

        now = self._clock()
        if not self._provider.is_configured:
            self._logger.warning(f"Hosting provider not configured, auto-verifying {domain.domain} for development")
            await self._mark_verified(domain, now)
            return domain, False

        try:
            check = await self._provider.check_domain(domain.domain)
        except HostingProviderError as exc:
            domain.last_check_at = now
            domain.last_check_error = str(exc)
            await self._db.commit()
            self._logger.error(f"Hosting provider domain check failed for {domain.domain}: {exc}")
            raise

        if check.verified:
            await self._mark_verified(domain, now)
            self._logger.info(f"Domain verified: {domain.domain} for organization {organization_id}")
        else:
            domain.status = DomainStatus.VERIFYING.value
            domain.last_check_at = now
            domain.last_check_error = check.reason
            await self._db.commit()
            self._logger.info(f"Domain {domain.domain} not verified yet: {check.reason}")
        return domain, False

    async def remove(self, organization_id: str) -> None:
        domain = await self.get_for_organization(organization_id)
        if domain is None:
            raise DomainNotFoundError("No custom domain configured")

        if self._provider.is_configured:
            try:
                await self._provider.remove_domain(domain.domain)
            except HostingProviderError as exc:
                # Removal continues locally; the provider entry is orphaned, not the mapping.
                self._logger.warning(f"Hosting provider domain removal failed for {domain.domain}: {exc}")

        await self._mapping_cache.invalidate(domain.domain)
        await self._db.delete(domain)
        await self._db.commit()

    async def transfer_ownership(self, hostname: str, organization_id: str) -> CustomDomain:
        host = normalize_hostname(hostname)
        result = await self._db.execute(select(CustomDomain).where(CustomDomain.domain == host))
        domain = result.scalar_one_or_none()
        if domain is None:
            raise DomainNotFoundError(f"Domain '{host}' is not registered")

        domain.organization_id = organization_id
        await self._db.commit()
        await self._mapping_cache.invalidate(host)
        return domain

    async def _is_taken(self, host: str) -> bool:
        result = await self._db.execute(select(CustomDomain.id).where(CustomDomain.domain == host))
        return result.scalar_one_or_none() is not None

    async def _mark_verified(self, domain: CustomDomain, now: datetime.datetime) -> None:
        domain.status = DomainStatus.VERIFIED.value
        domain.verified_at = now
        domain.last_check_at = now
        domain.last_check_error = None
        await self._db.commit()
        await self._mapping_cache.store(domain.domain, domain.organization_id)
