from __future__ import annotations

import threading
from typing import List, Optional

from psycopg_pool import AsyncConnectionPool
import redis.asyncio as aioredis

from credstore.config import SessionBackendKind, Settings, get_settings, reset_settings_cache
from credstore.logging import get_logger, mask_url_password
from credstore.service.appauth import AppAuthVerifier
from credstore.service.password_reset import PasswordResetFlow
from credstore.service.passwords import Argon2idStrategy
from credstore.service.sessions import SessionManager
from credstore.service.users import UserManager
from credstore.storage.base import AppAuthStore, SessionBackend, TokenCache, UserStore
from credstore.storage.memory import (
    MemoryAppAuthStore,
    MemorySessionBackend,
    MemoryTokenCache,
    MemoryUserStore,
)
from credstore.storage.postgres import (
    PostgresAppAuthStore,
    PostgresSessionBackend,
    PostgresUserStore,
    create_pool,
    verify_schema,
)
from credstore.storage.redis_cache import (
    RedisSessionBackend,
    RedisTokenCache,
    create_redis_client,
)
from credstore.usernames import get_username_policy

logger = get_logger(__name__)


class Runtime:
    """Wires stores, caches and services from one ``Settings``.

    Construction only builds objects; ``start()`` opens the Postgres pool and
    checks the schema, ``close()`` releases every connection.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.pool: Optional[AsyncConnectionPool] = None
        self.redis: Optional[aioredis.Redis] = None
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            session_backend=self.settings.session_backend.value,
        )

        self.username_type = get_username_policy(self.settings.username_policy)
        self.strategy = Argon2idStrategy.from_settings(self.settings)

        self.user_store: UserStore
        self.appauth_store: AppAuthStore
        self.token_cache: TokenCache
        if self.settings.use_memory_store:
            self.user_store = MemoryUserStore()
            self.appauth_store = MemoryAppAuthStore()
            self.token_cache = MemoryTokenCache()
        else:
            pool = self._postgres_pool()
            self.user_store = PostgresUserStore(
                pool, table=self.settings.users_table, username_type=self.username_type
            )
            self.appauth_store = PostgresAppAuthStore(pool, table=self.settings.appauth_table)
            self.token_cache = RedisTokenCache(self._redis_client())
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.session_backend = self._session_backend()
        self.sessions = SessionManager.from_settings(self.session_backend, self.settings)
        self.users = UserManager(self.user_store, self.strategy, self.username_type)
        self.appauth = AppAuthVerifier(self.appauth_store, self.token_cache)
        self.password_reset = PasswordResetFlow.from_settings(
            self.sessions, self.users, self.settings
        )

    def _postgres_pool(self) -> AsyncConnectionPool:
        if self.pool is None:
            self.pool = create_pool(
                self.settings.database_url,
                min_size=self.settings.pool_min_size,
                max_size=self.settings.pool_max_size,
            )
            logger.info(
                "postgres_pool_created",
                database_url=mask_url_password(self.settings.database_url),
            )
        return self.pool

    def _redis_client(self) -> aioredis.Redis:
        if self.redis is None:
            self.redis = create_redis_client(self.settings.redis_url)
            logger.info("redis_client_created", redis_url=mask_url_password(self.settings.redis_url))
        return self.redis

    def _session_backend(self) -> SessionBackend:
        kind = self.settings.session_backend
        if kind is SessionBackendKind.MEMORY:
            return MemorySessionBackend()
        if kind is SessionBackendKind.POSTGRES:
            return PostgresSessionBackend(
                self._postgres_pool(),
                sessions_table=self.settings.sessions_table,
                password_resets_table=self.settings.password_resets_table,
            )
        return RedisSessionBackend(self._redis_client())

    def _required_tables(self) -> List[str]:
        tables: List[str] = []
        if not self.settings.use_memory_store:
            tables += [self.settings.users_table, self.settings.appauth_table]
        if self.settings.session_backend is SessionBackendKind.POSTGRES:
            tables += [self.settings.sessions_table, self.settings.password_resets_table]
        return tables

    async def start(self) -> None:
        if self.pool is not None:
            await self.pool.open(wait=True)
            await verify_schema(self.pool, self._required_tables())
        if self.redis is not None:
            await self.redis.ping()
        logger.info("runtime_started")

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        if self.pool is not None:
            await self.pool.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton; callers still ``await start()``."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


async def reset_runtime() -> Runtime:
    """Close the current runtime and rebuild it from a fresh environment read."""
    global runtime
    with _runtime_lock:
        previous, runtime = runtime, None
    if previous is not None:
        await previous.close()
    reset_settings_cache()
    return get_runtime()


__all__ = ["Runtime", "get_runtime", "reset_runtime"]
