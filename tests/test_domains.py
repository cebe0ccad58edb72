"""Custom domain tests: hosting provider client, verification lifecycle and mapping cache."""

import datetime
import json
from collections.abc import AsyncGenerator, Callable
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
import redis.asyncio as redis
from sqlalchemy import select

from app.domain_service import DOMAIN_KEY_PREFIX, CustomDomainService, DomainMappingCache, validate_hostname
from app.enums import DomainStatus
from app.errors import DomainConflictError, DomainNotFoundError, HostingProviderError, InvalidDomainError
from app.hosting_provider import HostingProviderClient
from app.models import CustomDomain

NOW = datetime.datetime(2025, 6, 1, 10, 0, tzinfo=datetime.timezone.utc)


class ProviderStub:
    """Records requests and answers from a per-method handler."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handlers: dict[str, Callable[[httpx.Request], httpx.Response]] = {
            "POST": lambda request: httpx.Response(200, json={"name": "track.acme.com", "cnames": ["cname.vercel-dns.com"]}),
            "GET": lambda request: httpx.Response(200, json={"verified": True}),
            "DELETE": lambda request: httpx.Response(200, json={}),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handlers[request.method](request)


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest_asyncio.fixture
async def provider(provider_stub) -> AsyncGenerator[HostingProviderClient, None]:
    client = HostingProviderClient(
        base_url="https://api.vercel.test",
        token="token-123",
        project_id="prj_1",
        default_cname_target="cname.vercel-dns.com",
        transport=httpx.MockTransport(provider_stub),
    )
    yield client
    await client.close()


@pytest.fixture
def mapping_cache(db_session, mock_redis, logger) -> DomainMappingCache:
    return DomainMappingCache(db_session, mock_redis, logger, ttl_seconds=604800)


@pytest.fixture
def service(db_session, mapping_cache, provider, logger) -> CustomDomainService:
    return CustomDomainService(db_session, mapping_cache, provider, logger, clock=lambda: NOW)


# ============================================================================
# HOSTNAME VALIDATION
# ============================================================================


def test_validate_hostname_normalizes():
    assert validate_hostname("  Track.ACME.com. ") == "track.acme.com"


@pytest.mark.parametrize("hostname", ["", "not a domain", "acme", "http://acme.com", "-bad-.com"])
def test_validate_hostname_rejects_garbage(hostname):
    with pytest.raises(InvalidDomainError):
        validate_hostname(hostname)


# ============================================================================
# HOSTING PROVIDER CLIENT
# ============================================================================


class TestHostingProviderClient:
    @pytest.mark.asyncio
    async def test_add_domain_returns_cname(self, provider, provider_stub):
        assert await provider.add_domain("track.acme.com") == "cname.vercel-dns.com"

        request = provider_stub.requests[0]
        assert request.url.path == "/v10/projects/prj_1/domains"
        assert request.headers["authorization"] == "Bearer token-123"
        assert json.loads(request.content) == {"name": "track.acme.com"}

    @pytest.mark.asyncio
    async def test_add_domain_already_in_use(self, provider, provider_stub):
        provider_stub.handlers["POST"] = lambda request: httpx.Response(
            409, json={"error": {"code": "domain_already_in_use", "message": "in use"}}
        )
        with pytest.raises(DomainConflictError):
            await provider.add_domain("track.acme.com")

    @pytest.mark.asyncio
    async def test_check_domain_pending_reports_reason(self, provider, provider_stub):
        provider_stub.handlers["GET"] = lambda request: httpx.Response(
            200, json={"verified": False, "verification": [{"type": "TXT", "reason": "pending_domain_verification"}]}
        )
        result = await provider.check_domain("track.acme.com")
        assert result.verified is False
        assert result.reason == "pending_domain_verification"

    @pytest.mark.asyncio
    async def test_check_domain_server_error(self, provider, provider_stub):
        provider_stub.handlers["GET"] = lambda request: httpx.Response(503)
        with pytest.raises(HostingProviderError):
            await provider.check_domain("track.acme.com")

    @pytest.mark.asyncio
    async def test_transport_error_becomes_provider_error(self, provider, provider_stub):
        def _boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider_stub.handlers["GET"] = _boom
        with pytest.raises(HostingProviderError):
            await provider.check_domain("track.acme.com")

    @pytest.mark.asyncio
    async def test_remove_missing_domain_is_success(self, provider, provider_stub):
        provider_stub.handlers["DELETE"] = lambda request: httpx.Response(404, json={"error": {"code": "not_found"}})
        await provider.remove_domain("track.acme.com")


# ============================================================================
# VERIFICATION LIFECYCLE
# ============================================================================


class TestCustomDomainService:
    @pytest.mark.asyncio
    async def test_register_starts_unverified(self, service):
        domain = await service.register("org-1", "Track.Acme.com")

        assert domain.domain == "track.acme.com"
        assert domain.status == DomainStatus.UNVERIFIED
        assert domain.cname_target == "cname.vercel-dns.com"

    @pytest.mark.asyncio
    async def test_one_domain_per_organization(self, service):
        await service.register("org-1", "track.acme.com")
        with pytest.raises(DomainConflictError):
            await service.register("org-1", "links.acme.com")

    @pytest.mark.asyncio
    async def test_domain_is_globally_unique(self, service):
        await service.register("org-1", "track.acme.com")
        with pytest.raises(DomainConflictError):
            await service.register("org-2", "track.acme.com")

    @pytest.mark.asyncio
    async def test_concurrent_registration_is_conflict(self, service, session_factory):
        async with session_factory() as other:
            other.add(CustomDomain(organization_id="org-2", domain="track.acme.com"))
            await other.commit()

        # The uniqueness read ran before the competing insert committed.
        with patch.object(service, "_is_taken", AsyncMock(return_value=False)):
            with pytest.raises(DomainConflictError):
                await service.register("org-1", "track.acme.com")

        assert await service.get_for_organization("org-1") is None

    @pytest.mark.asyncio
    async def test_register_invalid_hostname(self, service, provider_stub):
        with pytest.raises(InvalidDomainError):
            await service.register("org-1", "not a domain")
        assert provider_stub.requests == []

    @pytest.mark.asyncio
    async def test_verify_confirmed_caches_mapping(self, service, cache_store, mock_redis):
        await service.register("org-1", "track.acme.com")

        domain, already_verified = await service.verify("org-1")

        assert already_verified is False
        assert domain.status == DomainStatus.VERIFIED
        assert domain.verified_at == NOW
        assert domain.last_check_at == NOW
        assert domain.last_check_error is None
        assert json.loads(cache_store[f"{DOMAIN_KEY_PREFIX}track.acme.com"]) == {"organization_id": "org-1"}
        assert mock_redis.set.await_args.kwargs["ex"] == 604800

    @pytest.mark.asyncio
    async def test_verify_not_confirmed_moves_to_verifying(self, service, provider_stub, cache_store):
        provider_stub.handlers["GET"] = lambda request: httpx.Response(
            200, json={"verified": False, "verification": [{"reason": "CNAME record missing"}]}
        )
        await service.register("org-1", "track.acme.com")

        domain, _ = await service.verify("org-1")
        assert domain.status == DomainStatus.VERIFYING
        assert domain.last_check_error == "CNAME record missing"

        # Still pending on the next check.
        domain, _ = await service.verify("org-1")
        assert domain.status == DomainStatus.VERIFYING
        assert f"{DOMAIN_KEY_PREFIX}track.acme.com" not in cache_store

    @pytest.mark.asyncio
    async def test_verify_provider_unreachable_keeps_state(self, service, provider_stub):
        provider_stub.handlers["GET"] = lambda request: httpx.Response(500)
        await service.register("org-1", "track.acme.com")

        with pytest.raises(HostingProviderError):
            await service.verify("org-1")

        domain = await service.get_for_organization("org-1")
        assert domain.status == DomainStatus.UNVERIFIED
        assert domain.last_check_at == NOW
        assert domain.last_check_error

    @pytest.mark.asyncio
    async def test_check_timestamps_read_back_in_utc(self, service, session_factory):
        await service.register("org-1", "track.acme.com")
        await service.verify("org-1")

        async with session_factory() as session:
            domain = (await session.execute(select(CustomDomain))).scalar_one()

        assert domain.verified_at == NOW
        assert domain.last_check_at.tzinfo is not None
        assert domain.last_check_at.utcoffset() == datetime.timedelta(0)

    @pytest.mark.asyncio
    async def test_verify_already_verified(self, service, provider_stub):
        await service.register("org-1", "track.acme.com")
        await service.verify("org-1")
        calls = len(provider_stub.requests)

        _, already_verified = await service.verify("org-1")

        assert already_verified is True
        assert len(provider_stub.requests) == calls

    @pytest.mark.asyncio
    async def test_verify_without_domain(self, service):
        with pytest.raises(DomainNotFoundError):
            await service.verify("org-1")

    @pytest.mark.asyncio
    async def test_unconfigured_provider_auto_verifies(self, db_session, mapping_cache, hosting_provider, logger):
        service = CustomDomainService(db_session, mapping_cache, hosting_provider, logger, clock=lambda: NOW)
        domain = await service.register("org-1", "track.acme.com")
        assert domain.cname_target == "cname.vercel-dns.com"

        domain, _ = await service.verify("org-1")

        assert domain.status == DomainStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_remove_invalidates_cache_and_deletes(self, service, provider_stub, cache_store, db_session):
        await service.register("org-1", "track.acme.com")
        await service.verify("org-1")

        await service.remove("org-1")

        assert f"{DOMAIN_KEY_PREFIX}track.acme.com" not in cache_store
        assert provider_stub.requests[-1].method == "DELETE"
        result = await db_session.execute(select(CustomDomain))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_remove_survives_provider_failure(self, service, provider_stub):
        provider_stub.handlers["DELETE"] = lambda request: httpx.Response(500)
        await service.register("org-1", "track.acme.com")

        await service.remove("org-1")

        assert await service.get_for_organization("org-1") is None

    @pytest.mark.asyncio
    async def test_transfer_ownership_invalidates_cache(self, service, mapping_cache, cache_store):
        await service.register("org-1", "track.acme.com")
        await service.verify("org-1")
        assert await mapping_cache.lookup("track.acme.com") == "org-1"

        await service.transfer_ownership("track.acme.com", "org-2")

        assert f"{DOMAIN_KEY_PREFIX}track.acme.com" not in cache_store
        assert await mapping_cache.lookup("track.acme.com") == "org-2"


# ============================================================================
# MAPPING CACHE
# ============================================================================


class TestDomainMappingCache:
    @pytest.mark.asyncio
    async def test_hit_short_circuits_store(self, mock_redis, logger, cache_store):
        db = AsyncMock()
        cache = DomainMappingCache(db, mock_redis, logger)
        cache_store[f"{DOMAIN_KEY_PREFIX}track.acme.com"] = json.dumps({"organization_id": "org-9"})

        assert await cache.lookup("TRACK.acme.com:443") == "org-9"
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unverified_domains_do_not_resolve(self, service, mapping_cache, cache_store):
        await service.register("org-1", "track.acme.com")

        assert await mapping_cache.lookup("track.acme.com") is None
        assert f"{DOMAIN_KEY_PREFIX}track.acme.com" not in cache_store

    @pytest.mark.asyncio
    async def test_miss_repopulates_cache(self, db_session, mapping_cache, cache_store):
        db_session.add(CustomDomain(organization_id="org-1", domain="track.acme.com", status=DomainStatus.VERIFIED.value))
        await db_session.commit()

        assert await mapping_cache.lookup("track.acme.com") == "org-1"
        assert f"{DOMAIN_KEY_PREFIX}track.acme.com" in cache_store

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_store(self, db_session, mock_redis, logger):
        mock_redis.get.side_effect = redis.ConnectionError("connection refused")
        mock_redis.set.side_effect = redis.ConnectionError("connection refused")
        db_session.add(CustomDomain(organization_id="org-1", domain="track.acme.com", status=DomainStatus.VERIFIED.value))
        await db_session.commit()

        cache = DomainMappingCache(db_session, mock_redis, logger)
        assert await cache.lookup("track.acme.com") == "org-1"
