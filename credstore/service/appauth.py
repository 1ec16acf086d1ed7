from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Tuple

import redis
from pydantic import SecretStr

from credstore.logging import get_logger
from credstore.service.errors import InvalidToken
from credstore.storage.base import AppAuthStore, TokenCache
from credstore.storage.models import AppAuth, AppAuthId, NewAppAuth, utcnow

logger = get_logger(__name__)

# Cache failures tolerated on the read and write paths; durable errors propagate
CACHE_ERRORS = (redis.RedisError, OSError)


class CacheResult(Enum):
    HIT = "hit"
    MISS = "miss"
    MISMATCH = "mismatch"
    ERROR = "error"


class AppAuthVerifier:
    """Cache-aside verification of application tokens.

    The durable store is authoritative. The cache only answers positively:
    a cached token equal to the presented one is accepted outright, anything
    else falls through to the store, and the cache is repaired from the
    store's answer.
    """

    def __init__(
        self,
        store: AppAuthStore,
        cache: TokenCache,
        *,
        clock: Optional[Callable] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock or utcnow

    async def create_appauth(
        self, new: NewAppAuth, *, appauth_id: Optional[AppAuthId] = None
    ) -> AppAuth:
        appauth_id = await self.store.insert_appauth(new, appauth_id=appauth_id)
        record = await self.store.find_appauth_by_id(appauth_id)
        try:
            await self.cache.set_token(record)
        except CACHE_ERRORS as exc:
            # the first verification backfills the cache
            logger.warning("appauth_cache_write_failed", appauth_id=str(appauth_id), error=str(exc))
        logger.info("appauth_created", appauth_id=str(appauth_id), name=record.name)
        return record

    async def find_appauth(self, appauth_id: AppAuthId) -> AppAuth:
        return await self.store.find_appauth_by_id(appauth_id)

    async def rotate_token(self, appauth_id: AppAuthId, token: str) -> AppAuth:
        """Replace the token durably, then write the new token through to the cache."""
        record = await self.store.update_token(appauth_id, SecretStr(token))
        await self._repair_cache(record)
        logger.info("appauth_token_rotated", appauth_id=str(appauth_id))
        return record

    async def _check_cache(self, appauth_id: AppAuthId, presented: str) -> CacheResult:
        try:
            cached = await self.cache.get_token(appauth_id)
        except CACHE_ERRORS as exc:
            logger.warning("appauth_cache_read_failed", appauth_id=str(appauth_id), error=str(exc))
            return CacheResult.ERROR
        if cached is None:
            return CacheResult.MISS
        if cached == presented:
            return CacheResult.HIT
        return CacheResult.MISMATCH

    async def _check_durable(self, appauth_id: AppAuthId, presented: str) -> Tuple[AppAuth, bool]:
        record = await self.store.find_appauth_by_id(appauth_id)
        return record, record.token.get_secret_value() == presented

    async def _repair_cache(self, record: AppAuth) -> None:
        try:
            await self.cache.set_token(record)
        except CACHE_ERRORS as exc:
            logger.warning("appauth_cache_repair_failed", appauth_id=str(record.id), error=str(exc))

    async def verify_token(self, appauth_id: AppAuthId, presented: str) -> None:
        """Accept ``presented`` for ``appauth_id`` or raise.

        Raises ``InvalidToken`` on mismatch or an expired record and
        ``AppAuthNotFound`` when the id is unknown to the durable store.
        """
        result = await self._check_cache(appauth_id, presented)
        if result is CacheResult.HIT:
            return

        record, matches = await self._check_durable(appauth_id, presented)
        # an expired record clears its cache entry here
        await self._repair_cache(record)
        if record.is_expired(self._clock()):
            logger.info("appauth_expired", appauth_id=str(appauth_id))
            raise InvalidToken("The provided token has expired.")
        if not matches:
            logger.info("appauth_token_mismatch", appauth_id=str(appauth_id), cache=result.value)
            raise InvalidToken()
        logger.debug("appauth_cache_backfilled", appauth_id=str(appauth_id), cache=result.value)


__all__ = ["AppAuthVerifier", "CacheResult", "CACHE_ERRORS"]
