from __future__ import annotations

from typing import Type

from pydantic import SecretStr

from credstore.logging import get_logger
from credstore.service.errors import (
    AuthenticationFailed,
    InvalidPassword,
    UserNotFound,
)
from credstore.service.passwords import PasswordStrategy
from credstore.storage.base import UserStore
from credstore.storage.models import NewUser, User, UserId
from credstore.usernames import Username, UsernameError

logger = get_logger(__name__)


class UserManager:
    """User accounts: creation, lookup and password checks.

    Hashing goes through the injected strategy; the store only ever sees
    password hashes.
    """

    def __init__(
        self,
        store: UserStore,
        strategy: PasswordStrategy,
        username_type: Type[Username],
    ) -> None:
        self.store = store
        self.strategy = strategy
        self.username_type = username_type

    async def create_user(self, new_user: NewUser) -> User:
        password_hash = self.strategy.generate_password_hash(
            new_user.password.get_secret_value()
        )
        user = await self.store.insert_user(
            new_user.username, password_hash, new_user.meta, user_id=new_user.id
        )
        logger.info("user_created", user_id=str(user.id))
        return user

    async def find_user_by_id(self, user_id: UserId) -> User:
        return await self.store.find_user_by_id(user_id)

    async def find_user_by_username(self, username: str) -> User:
        try:
            parsed = self.username_type.parse(username)
        except UsernameError:
            # no account can exist under a name the policy rejects
            raise UserNotFound(username) from None
        return await self.store.find_user_by_username(parsed)

    def verify_password(self, user: User, password: str) -> None:
        if not self.strategy.verify_password(
            user.password_hash.get_secret_value(), password
        ):
            raise InvalidPassword()

    async def authenticate(self, username: str, password: str) -> User:
        try:
            user = await self.find_user_by_username(username)
        except UserNotFound:
            logger.warning("authentication_failed", reason="unknown_user")
            raise AuthenticationFailed("unknown_user") from None
        try:
            self.verify_password(user, password)
        except InvalidPassword:
            logger.warning("authentication_failed", reason="wrong_password", user_id=str(user.id))
            raise AuthenticationFailed("wrong_password") from None
        if self.strategy.needs_rehash(user.password_hash.get_secret_value()):
            user = await self.store.update_password_hash(
                user.id, self.strategy.generate_password_hash(password)
            )
            logger.info("password_rehashed", user_id=str(user.id))
        return user

    async def change_password(self, user_id: UserId, new_password: str) -> User:
        password_hash: SecretStr = self.strategy.generate_password_hash(new_password)
        user = await self.store.update_password_hash(user_id, password_hash)
        logger.info("password_changed", user_id=str(user_id))
        return user


__all__ = ["UserManager"]
