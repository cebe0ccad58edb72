"""Short-code mapping persistence: insertion with collision retry and mutations.

Codes are random, so two QR resources can draw the same one. The unique index on
``qr_codes.short_code`` is the arbiter: an IntegrityError means "draw again".

A freshly created mapping is written to ``redirect:<code>`` right away so the
first scan is already a cache hit. Mutations that change what a redirect should
do (activation toggling, destination edits) drop that cached projection so the
next scan goes back to the store. If the cache is down the write or delete is
skipped and any old entry lives until its TTL runs out.
"""

import logging

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ShortCodeAllocationError, ShortCodeNotFoundError
from app.models import ShortCodeMapping
from app.redirect_service import REDIRECT_KEY_PREFIX
from app.schemas import CachedRedirect
from app.shortcode import generate_short_code

__all__ = ["ShortCodeMappingRepository"]


class ShortCodeMappingRepository:
    def __init__(
        self,
        db: AsyncSession,
        cache: redis.Redis | None,
        logger: logging.Logger | logging.LoggerAdapter,
        max_attempts: int = 5,
        ttl_seconds: int = 60 * 60 * 24,
    ):
        self._db = db
        self._cache = cache
        self._logger = logger
        self._max_attempts = max_attempts
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_context(cls, ctx) -> "ShortCodeMappingRepository":
        return cls(
            db=ctx.database,
            cache=ctx.cache,
            logger=ctx.logger,
            max_attempts=ctx.settings.SHORT_CODE_MAX_ATTEMPTS,
            ttl_seconds=ctx.settings.REDIRECT_CACHE_TTL_SECONDS,
        )

    async def create(self, destination_url: str, organization_id: str | None = None) -> ShortCodeMapping:
        """Insert a new mapping under a freshly generated, unused code.

        Raises:
            ShortCodeAllocationError: Every attempt collided with an existing code.
        """
        for attempt in range(1, self._max_attempts + 1):
            mapping = ShortCodeMapping(
                short_code=generate_short_code(),
                destination_url=destination_url,
                organization_id=organization_id,
                is_active=True,
            )
            self._db.add(mapping)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                self._logger.warning(f"Short code collision on attempt {attempt}: {mapping.short_code}")
                continue
            await self._db.refresh(mapping)
            await self._prime(mapping)
            return mapping

        raise ShortCodeAllocationError(f"No free short code after {self._max_attempts} attempts")

    async def get_by_code(self, short_code: str, organization_id: str | None = None) -> ShortCodeMapping | None:
        """Look up a mapping, optionally only among ``organization_id``'s codes."""
        query = select(ShortCodeMapping).where(ShortCodeMapping.short_code == short_code)
        if organization_id is not None:
            query = query.where(ShortCodeMapping.organization_id == organization_id)
        result = await self._db.execute(query)
        return result.scalar_one_or_none()

    async def set_active(
        self, short_code: str, is_active: bool, organization_id: str | None = None
    ) -> ShortCodeMapping:
        mapping = await self._require(short_code, organization_id)
        mapping.is_active = is_active
        await self._db.commit()
        await self._invalidate(short_code)
        return mapping

    async def update_destination(
        self, short_code: str, destination_url: str, organization_id: str | None = None
    ) -> ShortCodeMapping:
        mapping = await self._require(short_code, organization_id)
        mapping.destination_url = destination_url
        await self._db.commit()
        await self._invalidate(short_code)
        return mapping

    async def _require(self, short_code: str, organization_id: str | None) -> ShortCodeMapping:
        mapping = await self.get_by_code(short_code, organization_id)
        if mapping is None:
            raise ShortCodeNotFoundError(short_code)
        return mapping

    async def _prime(self, mapping: ShortCodeMapping) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(
                f"{REDIRECT_KEY_PREFIX}{mapping.short_code}",
                CachedRedirect.from_mapping(mapping).model_dump_json(),
                ex=self._ttl_seconds,
            )
        except Exception as exc:
            self._logger.warning(f"KV set error for {mapping.short_code}: {exc}")

    async def _invalidate(self, short_code: str) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.delete(f"{REDIRECT_KEY_PREFIX}{short_code}")
        except Exception as exc:
            self._logger.warning(f"KV del error for {short_code}: {exc}")
