from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis

from credstore.logging import get_logger
from credstore.service.errors import (
    CacheDecodeError,
    PasswordResetNotFound,
    SessionNotFound,
)
from credstore.storage.models import (
    AppAuth,
    AppAuthId,
    PasswordReset,
    PasswordResetId,
    Session,
    SessionId,
    UserId,
    ensure_utc,
    utcnow,
)

logger = get_logger(__name__)

# PTTL replies for a missing key and a key without expiry
_PTTL_MISSING = -2
_PTTL_PERSISTENT = -1


def create_redis_client(redis_url: str, *, socket_timeout: float = 5.0) -> aioredis.Redis:
    """Build an async client with explicit timeouts and decoded replies."""
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def _epoch_ms(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() * 1000)


class RedisSessionBackend:
    """Sessions and reset ids as JSON blobs under namespaced keys.

    Expiry is the key's own absolute expiry, so there is nothing to sweep:
    Redis evicts passively and ``clear_stale_sessions`` is a no-op.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "session",
        reset_namespace: str = "password_reset",
        owner_type: Any = UserId,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.reset_namespace = reset_namespace
        self.owner_type = owner_type
        self._clock = clock

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0, **kwargs: Any) -> "RedisSessionBackend":
        return cls(create_redis_client(redis_url, socket_timeout=socket_timeout), **kwargs)

    def _key(self, session_id: SessionId) -> str:
        return f"{self.namespace}/{session_id}"

    def _reset_key(self, reset_id: PasswordResetId) -> str:
        return f"{self.reset_namespace}/{reset_id}"

    @staticmethod
    def _encode(session: Session) -> str:
        return json.dumps({"user_id": str(session.user_id), "data": session.data})

    def _decode(self, session_id: SessionId, raw: str) -> Dict[str, Any]:
        try:
            payload = json.loads(raw)
            return {
                "user_id": self.owner_type.parse(payload["user_id"]),
                "data": payload.get("data") or {},
            }
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as exc:
            raise CacheDecodeError(
                f"Undecodable session blob for {str(session_id)[:8]}",
                detail={"session_prefix": str(session_id)[:8]},
            ) from exc

    async def new_session(
        self, user_id: Any, expires_at: datetime, data: Optional[Dict[str, Any]] = None
    ) -> Session:
        sess = Session(
            id=SessionId.new(),
            user_id=user_id,
            expires_at=ensure_utc(expires_at),
            data=dict(data or {}),
        )
        if sess.is_expired(self._clock()):
            # Already dead; writing it would only race Redis' own eviction
            logger.debug("redis_session_born_expired", session_prefix=str(sess.id)[:8])
            return sess
        await self.client.set(self._key(sess.id), self._encode(sess), pxat=_epoch_ms(sess.expires_at))
        return sess

    async def session(
        self, session_id: SessionId, extend_expiry: Optional[datetime] = None
    ) -> Session:
        key = self._key(session_id)
        pipe = self.client.pipeline(transaction=True)
        if extend_expiry is not None:
            pipe.getex(key, pxat=_epoch_ms(extend_expiry))
        else:
            pipe.get(key)
        pipe.pttl(key)
        raw, ttl_ms = await pipe.execute()
        if raw is None or ttl_ms == _PTTL_MISSING:
            raise SessionNotFound(session_id)

        decoded = self._decode(session_id, raw)
        if extend_expiry is not None:
            expires_at = ensure_utc(extend_expiry)
        elif ttl_ms == _PTTL_PERSISTENT:
            expires_at = datetime.max.replace(tzinfo=timezone.utc)
        else:
            expires_at = self._clock() + timedelta(milliseconds=int(ttl_ms))
        return Session(
            id=session_id,
            user_id=decoded["user_id"],
            expires_at=expires_at,
            data=decoded["data"],
        )

    async def clear_stale_sessions(self) -> int:
        return 0

    async def expire(self, session: Session) -> None:
        await self.client.delete(self._key(session.id))

    async def extend_expiry_date(self, session: Session, expires_at: datetime) -> Session:
        return await self.session(session.id, extend_expiry=expires_at)

    async def new_password_reset(self, user_id: Any, expires_at: datetime) -> PasswordReset:
        reset = PasswordReset(
            id=PasswordResetId.new(), user_id=user_id, expires_at=ensure_utc(expires_at)
        )
        if not reset.is_expired(self._clock()):
            await self.client.set(
                self._reset_key(reset.id), str(user_id), pxat=_epoch_ms(reset.expires_at)
            )
        return reset

    async def consume_password_reset(self, reset_id: PasswordResetId) -> Any:
        # GETDEL: two concurrent consumers can never both read the value
        raw = await self.client.getdel(self._reset_key(reset_id))
        if raw is None:
            raise PasswordResetNotFound(reset_id)
        try:
            return self.owner_type.parse(raw)
        except (TypeError, ValueError) as exc:
            raise CacheDecodeError(
                f"Undecodable password reset owner for {str(reset_id)[:8]}",
                detail={"reset_prefix": str(reset_id)[:8]},
            ) from exc

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()


class RedisTokenCache:
    """AppAuth tokens under ``appauth/{id}`` with the record's absolute expiry."""

    def __init__(self, client: aioredis.Redis, *, namespace: str = "appauth", clock: Callable[[], datetime] = utcnow) -> None:
        self.client = client
        self.namespace = namespace
        self._clock = clock

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0, **kwargs: Any) -> "RedisTokenCache":
        return cls(create_redis_client(redis_url, socket_timeout=socket_timeout), **kwargs)

    def _key(self, appauth_id: AppAuthId) -> str:
        return f"{self.namespace}/{appauth_id}"

    async def get_token(self, appauth_id: AppAuthId) -> Optional[str]:
        return await self.client.get(self._key(appauth_id))

    async def set_token(self, appauth: AppAuth) -> None:
        key = self._key(appauth.id)
        token = appauth.token.get_secret_value()
        if appauth.expires_at is None:
            await self.client.set(key, token)
            return
        if appauth.is_expired(self._clock()):
            await self.client.delete(key)
            return
        await self.client.set(key, token, pxat=_epoch_ms(appauth.expires_at))

    async def delete_token(self, appauth_id: AppAuthId) -> None:
        await self.client.delete(self._key(appauth_id))

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisSessionBackend", "RedisTokenCache", "create_redis_client"]
