"""Storage contracts shared by the memory, Postgres and Redis backends.

Services depend only on these protocols, never on a concrete backend.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from pydantic import SecretStr

from credstore.storage.models import (
    AppAuth,
    AppAuthId,
    NewAppAuth,
    PasswordReset,
    PasswordResetId,
    Session,
    SessionId,
    User,
    UserId,
)
from credstore.usernames import Username


class SessionBackend(Protocol):
    async def new_session(
        self, user_id: Any, expires_at: datetime, data: Optional[Dict[str, Any]] = None
    ) -> Session: ...

    async def session(
        self, session_id: SessionId, extend_expiry: Optional[datetime] = None
    ) -> Session: ...

    async def clear_stale_sessions(self) -> int: ...

    async def expire(self, session: Session) -> None: ...

    async def extend_expiry_date(self, session: Session, expires_at: datetime) -> Session: ...

    async def new_password_reset(self, user_id: Any, expires_at: datetime) -> PasswordReset: ...

    async def consume_password_reset(self, reset_id: PasswordResetId) -> Any: ...


class UserStore(Protocol):
    async def insert_user(
        self,
        username: Username,
        password_hash: SecretStr,
        meta: Dict[str, Any],
        *,
        user_id: Optional[UserId] = None,
    ) -> User: ...

    async def find_user_by_id(self, user_id: UserId) -> User: ...

    async def find_user_by_username(self, username: Username) -> User: ...

    async def update_password_hash(self, user_id: UserId, password_hash: SecretStr) -> User: ...


class AppAuthStore(Protocol):
    """Durable system of record for application credentials."""

    async def insert_appauth(
        self, appauth: NewAppAuth, *, appauth_id: Optional[AppAuthId] = None
    ) -> AppAuthId: ...

    async def find_appauth_by_id(self, appauth_id: AppAuthId) -> AppAuth: ...

    async def update_token(self, appauth_id: AppAuthId, token: SecretStr) -> AppAuth: ...


class TokenCache(Protocol):
    """Fast lookup of AppAuth tokens keyed by id."""

    async def get_token(self, appauth_id: AppAuthId) -> Optional[str]: ...

    async def set_token(self, appauth: AppAuth) -> None: ...

    async def delete_token(self, appauth_id: AppAuthId) -> None: ...


__all__ = ["SessionBackend", "UserStore", "AppAuthStore", "TokenCache"]
