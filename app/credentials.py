"""API-key authentication for the organization API.

Keys look like ``qr_<prefix>_<secret>``. Only ``qr_<prefix>`` and the SHA-256
digest of the whole key are stored; the raw key is shown once, at issue time.

Flow Diagram — authenticate()
=============================
::
    X-API-Key header
        │ missing / malformed ──► InvalidApiKeyError (401)
        ▼
    SELECT api_keys WHERE key_prefix = ? AND key_hash = sha256(key)
        │ none / inactive / expired ──► InvalidApiKeyError (401)
        ▼
    spawn last_used_at touch (detached) ──► ApiCredential
"""

import datetime
import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.background import BackgroundTaskRunner
from app.errors import InvalidApiKeyError
from app.models import ApiKey

__all__ = ["API_KEY_SCHEME", "ApiCredential", "ApiKeyAuthenticator", "hash_api_key", "issue_api_key", "key_prefix"]

API_KEY_SCHEME = "qr"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_prefix(raw_key: str) -> str:
    """Return ``qr_<prefix>`` or raise InvalidApiKeyError for malformed keys."""
    parts = raw_key.split("_")
    if len(parts) < 3 or parts[0] != API_KEY_SCHEME or not parts[1]:
        raise InvalidApiKeyError("Invalid API key format")
    return f"{API_KEY_SCHEME}_{parts[1]}"


async def issue_api_key(
    db: AsyncSession,
    organization_id: str,
    name: str,
    rate_limit_per_day: int = 1000,
    expires_at: datetime.datetime | None = None,
) -> tuple[ApiKey, str]:
    """Create a key for ``organization_id``; returns the row and the raw key."""
    raw_key = f"{API_KEY_SCHEME}_{secrets.token_hex(4)}_{secrets.token_urlsafe(24).replace('_', '-')}"
    api_key = ApiKey(
        organization_id=organization_id,
        name=name,
        key_prefix=key_prefix(raw_key),
        key_hash=hash_api_key(raw_key),
        rate_limit_per_day=rate_limit_per_day,
        expires_at=expires_at,
    )
    db.add(api_key)
    await db.commit()
    await db.refresh(api_key)
    return api_key, raw_key


@dataclass(frozen=True)
class ApiCredential:
    key_id: str
    organization_id: str
    rate_limit_per_day: int


class ApiKeyAuthenticator:
    def __init__(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        tasks: BackgroundTaskRunner,
        logger: logging.Logger | logging.LoggerAdapter,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self._db = db
        self._session_factory = session_factory
        self._tasks = tasks
        self._logger = logger
        self._clock = clock

    @classmethod
    def from_context(cls, ctx) -> "ApiKeyAuthenticator":
        return cls(db=ctx.database, session_factory=ctx.session_factory, tasks=ctx.tasks, logger=ctx.logger)

    async def authenticate(self, raw_key: str | None) -> ApiCredential:
        if not raw_key:
            raise InvalidApiKeyError("Missing API key")

        prefix = key_prefix(raw_key)
        result = await self._db.execute(
            select(ApiKey).where(ApiKey.key_prefix == prefix, ApiKey.key_hash == hash_api_key(raw_key))
        )
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise InvalidApiKeyError("Invalid API key")
        if not api_key.is_active:
            raise InvalidApiKeyError("API key is disabled")

        now = self._clock()
        if api_key.expires_at is not None and api_key.expires_at < now:
            raise InvalidApiKeyError("API key has expired")

        self._tasks.spawn(self._touch(api_key.id, now), name=f"api-key-touch:{api_key.id}")
        return ApiCredential(
            key_id=api_key.id,
            organization_id=api_key.organization_id,
            rate_limit_per_day=api_key.rate_limit_per_day,
        )

    async def _touch(self, key_id: str, used_at: datetime.datetime) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(update(ApiKey).where(ApiKey.id == key_id).values(last_used_at=used_at))
                await session.commit()
        except Exception as exc:
            self._logger.warning(f"Failed to update API key last_used_at for {key_id}: {exc}")
