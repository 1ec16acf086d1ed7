from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from credstore.logging import get_logger
from credstore.service.sessions import SessionManager
from credstore.service.users import UserManager
from credstore.storage.models import PasswordResetId, User

if TYPE_CHECKING:
    from credstore.config import Settings

logger = get_logger(__name__)


class PasswordResetFlow:
    """Issue and redeem single-use password reset ids.

    Redemption consumes the id before anything else. If a later step fails
    the id stays spent and the user has to request a new one.
    """

    def __init__(
        self,
        sessions: SessionManager,
        users: UserManager,
        *,
        reset_ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        self.sessions = sessions
        self.users = users
        self.reset_ttl = reset_ttl

    @classmethod
    def from_settings(
        cls, sessions: SessionManager, users: UserManager, settings: "Settings"
    ) -> "PasswordResetFlow":
        return cls(
            sessions,
            users,
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )

    async def request_reset(self, username: str) -> PasswordResetId:
        user = await self.users.find_user_by_username(username)
        expires_at = self.sessions.now() + self.reset_ttl
        return await self.sessions.generate_password_reset_id(user.id, expires_at)

    async def reset_password(self, reset_id: PasswordResetId, new_password: str) -> User:
        user_id = await self.sessions.consume_password_reset_id(reset_id)
        user = await self.users.find_user_by_id(user_id)
        try:
            return await self.users.change_password(user.id, new_password)
        except Exception:
            logger.warning(
                "password_reset_spent_without_change", reset_prefix=str(reset_id)[:8], user_id=str(user_id)
            )
            raise


__all__ = ["PasswordResetFlow"]
