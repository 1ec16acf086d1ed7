from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from credstore.logging import get_logger
from credstore.storage.base import SessionBackend
from credstore.storage.models import PasswordResetId, Session, SessionId, utcnow

if TYPE_CHECKING:
    from credstore.config import Settings

logger = get_logger(__name__)


class SessionManager:
    """Session lifetime policy on top of any ``SessionBackend``.

    Sessions live for ``alive_duration`` from creation. With ``auto_refresh``
    every successful read pushes the expiry to ``now + alive_duration`` in the
    same backend call as the lookup, so activity keeps a session alive.
    """

    def __init__(
        self,
        backend: SessionBackend,
        *,
        alive_duration: timedelta,
        auto_refresh: bool,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend
        self.alive_duration = alive_duration
        self.auto_refresh = auto_refresh
        self._clock = clock or utcnow

    @classmethod
    def from_settings(cls, backend: SessionBackend, settings: "Settings") -> "SessionManager":
        return cls(
            backend,
            alive_duration=timedelta(seconds=settings.session_alive_seconds),
            auto_refresh=settings.session_auto_refresh,
        )

    def now(self) -> datetime:
        return self._clock()

    def _next_expiry(self) -> datetime:
        return self.now() + self.alive_duration

    async def new_session(self, user_id: Any, data: Optional[Dict[str, Any]] = None) -> Session:
        sess = await self.backend.new_session(user_id, self._next_expiry(), data)
        logger.info("session_created", session_prefix=str(sess.id)[:8], user_id=str(user_id))
        return sess

    async def session(self, session_id: SessionId) -> Session:
        if self.auto_refresh:
            return await self.backend.session(session_id, extend_expiry=self._next_expiry())
        return await self.backend.session(session_id)

    async def extend_expiry_date(self, session: Session) -> Session:
        return await self.backend.extend_expiry_date(session, self._next_expiry())

    async def expire(self, session: Session) -> None:
        await self.backend.expire(session)
        logger.info("session_expired", session_prefix=str(session.id)[:8])

    async def clear_stale_sessions(self) -> int:
        removed = await self.backend.clear_stale_sessions()
        if removed:
            logger.info("stale_sessions_cleared", removed=removed)
        return removed

    async def generate_password_reset_id(
        self, user_id: Any, expires_at: datetime
    ) -> PasswordResetId:
        reset = await self.backend.new_password_reset(user_id, expires_at)
        logger.info(
            "password_reset_issued",
            reset_prefix=str(reset.id)[:8],
            user_id=str(user_id),
            expires_at=reset.expires_at.isoformat(),
        )
        return reset.id

    async def consume_password_reset_id(self, reset_id: PasswordResetId) -> Any:
        """Spend a reset id; a second call with the same id raises ``PasswordResetNotFound``."""
        user_id = await self.backend.consume_password_reset(reset_id)
        logger.info("password_reset_consumed", reset_prefix=str(reset_id)[:8], user_id=str(user_id))
        return user_id


__all__ = ["SessionManager"]
