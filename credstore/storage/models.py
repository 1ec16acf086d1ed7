from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar, Union

from pydantic import SecretStr

from credstore.usernames import Username

IdT = TypeVar("IdT", bound="OpaqueId")


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class OpaqueId:
    """Random 128-bit identifier with no semantic structure.

    Subclasses are distinct nominal types: the generated ``__eq__`` only
    compares instances of the exact same class, so a ``SessionId`` never equals
    a ``UserId`` wrapping the same UUID.
    """

    value: uuid.UUID = field(default_factory=uuid.uuid4)

    @classmethod
    def new(cls: Type[IdT]) -> IdT:
        return cls(uuid.uuid4())

    @classmethod
    def parse(cls: Type[IdT], raw: Union[str, uuid.UUID, "OpaqueId"]) -> IdT:
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, OpaqueId):
            raise TypeError(f"cannot use {type(raw).__name__} as {cls.__name__}")
        if isinstance(raw, uuid.UUID):
            return cls(raw)
        return cls(uuid.UUID(str(raw)))

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class SessionId(OpaqueId):
    pass


@dataclass(frozen=True)
class PasswordResetId(OpaqueId):
    pass


@dataclass(frozen=True)
class AppAuthId(OpaqueId):
    pass


@dataclass(frozen=True)
class UserId(OpaqueId):
    pass


@dataclass
class Session:
    id: SessionId
    user_id: Any
    expires_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utcnow())


@dataclass
class PasswordReset:
    id: PasswordResetId
    user_id: Any
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utcnow())


@dataclass
class NewAppAuth:
    name: str
    token: SecretStr
    description: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if isinstance(self.token, str):
            self.token = SecretStr(self.token)


@dataclass
class AppAuth:
    id: AppAuthId
    name: str
    token: SecretStr
    description: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) <= (now or utcnow())


@dataclass
class NewUser:
    username: Username
    password: SecretStr
    meta: Dict[str, Any] = field(default_factory=dict)
    id: Optional[UserId] = None

    @classmethod
    def new(
        cls,
        username: str,
        password: str,
        *,
        username_type: Type[Username],
        meta: Optional[Dict[str, Any]] = None,
    ) -> "NewUser":
        return cls(
            username=username_type.parse(username),
            password=SecretStr(password),
            meta=dict(meta or {}),
        )


@dataclass
class User:
    id: UserId
    username: Username
    password_hash: SecretStr
    meta: Dict[str, Any] = field(default_factory=dict)
