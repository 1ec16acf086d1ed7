from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import SecretStr

from credstore.logging import get_logger
from credstore.service.errors import (
    AppAuthNotFound,
    PasswordResetNotFound,
    SessionNotFound,
    UserNotFound,
)
from credstore.storage.errors import ConstraintViolation
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
    ensure_utc,
    utcnow,
)
from credstore.usernames import Username


class MemorySessionBackend:
    """In-process session and password-reset tables.

    Expiry is lazy: an expired record found by a read is deleted and reported
    absent. Records handed out are copies, so callers never mutate the table.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[SessionId, Session] = {}
        self.password_resets: Dict[PasswordResetId, PasswordReset] = {}
        # One lock for all table access; nothing awaits while it is held
        self._data_lock = threading.RLock()
        self._clock = clock

    async def new_session(
        self, user_id: Any, expires_at: datetime, data: Optional[Dict[str, Any]] = None
    ) -> Session:
        sess = Session(
            id=SessionId.new(),
            user_id=user_id,
            expires_at=ensure_utc(expires_at),
            data=dict(data or {}),
        )
        with self._data_lock:
            self.sessions[sess.id] = sess
            return replace(sess, data=dict(sess.data))

    def _live_session(self, session_id: SessionId) -> Session:
        # caller holds _data_lock
        sess = self.sessions.get(session_id)
        if sess is None:
            raise SessionNotFound(session_id)
        if sess.is_expired(self._clock()):
            self.sessions.pop(session_id, None)
            raise SessionNotFound(session_id)
        return sess

    async def session(
        self, session_id: SessionId, extend_expiry: Optional[datetime] = None
    ) -> Session:
        with self._data_lock:
            sess = self._live_session(session_id)
            if extend_expiry is not None:
                sess.expires_at = ensure_utc(extend_expiry)
            return replace(sess, data=dict(sess.data))

    async def clear_stale_sessions(self) -> int:
        now = self._clock()
        with self._data_lock:
            stale_sessions = [
                sid for sid, sess in self.sessions.items() if sess.is_expired(now)
            ]
            for sid in stale_sessions:
                self.sessions.pop(sid, None)
            stale_resets = [
                rid for rid, reset in self.password_resets.items() if reset.is_expired(now)
            ]
            for rid in stale_resets:
                self.password_resets.pop(rid, None)
        removed = len(stale_sessions) + len(stale_resets)
        if removed:
            self.logger.debug(
                "memory_stale_sessions_cleared",
                sessions=len(stale_sessions),
                password_resets=len(stale_resets),
            )
        return removed

    async def expire(self, session: Session) -> None:
        with self._data_lock:
            self.sessions.pop(session.id, None)

    async def extend_expiry_date(self, session: Session, expires_at: datetime) -> Session:
        with self._data_lock:
            sess = self._live_session(session.id)
            sess.expires_at = ensure_utc(expires_at)
            return replace(sess, data=dict(sess.data))

    async def new_password_reset(self, user_id: Any, expires_at: datetime) -> PasswordReset:
        reset = PasswordReset(
            id=PasswordResetId.new(), user_id=user_id, expires_at=ensure_utc(expires_at)
        )
        with self._data_lock:
            self.password_resets[reset.id] = reset
        return replace(reset)

    async def consume_password_reset(self, reset_id: PasswordResetId) -> Any:
        with self._data_lock:
            reset = self.password_resets.pop(reset_id, None)
        if reset is None or reset.is_expired(self._clock()):
            raise PasswordResetNotFound(reset_id)
        return reset.user_id


class MemoryUserStore:
    def __init__(self) -> None:
        self.users: Dict[UserId, User] = {}
        self._by_username: Dict[str, UserId] = {}
        self._data_lock = threading.RLock()

    async def insert_user(
        self,
        username: Username,
        password_hash: SecretStr,
        meta: Dict[str, Any],
        *,
        user_id: Optional[UserId] = None,
    ) -> User:
        with self._data_lock:
            if username.key in self._by_username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            uid = user_id or UserId.new()
            if uid in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            user = User(id=uid, username=username, password_hash=password_hash, meta=dict(meta))
            self.users[uid] = user
            self._by_username[username.key] = uid
            return replace(user, meta=dict(user.meta))

    async def find_user_by_id(self, user_id: UserId) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise UserNotFound(user_id)
            return replace(user, meta=dict(user.meta))

    async def find_user_by_username(self, username: Username) -> User:
        with self._data_lock:
            uid = self._by_username.get(username.key)
            if uid is None:
                raise UserNotFound(username)
            user = self.users[uid]
            return replace(user, meta=dict(user.meta))

    async def update_password_hash(self, user_id: UserId, password_hash: SecretStr) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise UserNotFound(user_id)
            user.password_hash = password_hash
            return replace(user, meta=dict(user.meta))


class MemoryAppAuthStore:
    """In-process stand-in for the durable AppAuth table."""

    def __init__(self) -> None:
        self.records: Dict[AppAuthId, AppAuth] = {}
        self._data_lock = threading.RLock()

    def _check_unique(self, name: Optional[str], token: Optional[str], skip: Optional[AppAuthId] = None) -> None:
        for existing in self.records.values():
            if existing.id == skip:
                continue
            if name is not None and existing.name == name:
                raise ConstraintViolation("appauth name already exists", {"field": "name"})
            if token is not None and existing.token.get_secret_value() == token:
                raise ConstraintViolation("appauth token already exists", {"field": "token"})

    async def insert_appauth(
        self, appauth: NewAppAuth, *, appauth_id: Optional[AppAuthId] = None
    ) -> AppAuthId:
        with self._data_lock:
            self._check_unique(appauth.name, appauth.token.get_secret_value())
            record_id = appauth_id or AppAuthId.new()
            if record_id in self.records:
                raise ConstraintViolation("appauth id already exists", {"field": "id"})
            record = AppAuth(
                id=record_id,
                name=appauth.name,
                token=appauth.token,
                description=appauth.description,
                meta=dict(appauth.meta),
                expires_at=ensure_utc(appauth.expires_at) if appauth.expires_at else None,
            )
            self.records[record.id] = record
            return record.id

    async def find_appauth_by_id(self, appauth_id: AppAuthId) -> AppAuth:
        with self._data_lock:
            record = self.records.get(appauth_id)
            if record is None:
                raise AppAuthNotFound(appauth_id)
            return replace(record, meta=dict(record.meta))

    async def update_token(self, appauth_id: AppAuthId, token: SecretStr) -> AppAuth:
        with self._data_lock:
            record = self.records.get(appauth_id)
            if record is None:
                raise AppAuthNotFound(appauth_id)
            self._check_unique(None, token.get_secret_value(), skip=appauth_id)
            record.token = token
            return replace(record, meta=dict(record.meta))


class MemoryTokenCache:
    """Dict-backed token cache with the same absolute-expiry semantics as Redis."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.tokens: Dict[AppAuthId, Tuple[str, Optional[datetime]]] = {}
        self._data_lock = threading.RLock()
        self._clock = clock

    async def get_token(self, appauth_id: AppAuthId) -> Optional[str]:
        with self._data_lock:
            entry = self.tokens.get(appauth_id)
            if entry is None:
                return None
            token, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                self.tokens.pop(appauth_id, None)
                return None
            return token

    async def set_token(self, appauth: AppAuth) -> None:
        expires_at = ensure_utc(appauth.expires_at) if appauth.expires_at else None
        with self._data_lock:
            if expires_at is not None and expires_at <= self._clock():
                self.tokens.pop(appauth.id, None)
                return
            self.tokens[appauth.id] = (appauth.token.get_secret_value(), expires_at)

    async def delete_token(self, appauth_id: AppAuthId) -> None:
        with self._data_lock:
            self.tokens.pop(appauth_id, None)


__all__ = [
    "MemorySessionBackend",
    "MemoryUserStore",
    "MemoryAppAuthStore",
    "MemoryTokenCache",
]
