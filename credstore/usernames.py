"""Swappable username policies.

A policy is a ``Username`` subclass: it parses and validates a raw string and
compares, orders and hashes case-insensitively so that ``"Alice"`` and
``"alice"`` name the same account. The rendered form keeps the caller's casing.
"""

from __future__ import annotations

import functools
import re
from typing import Any, Dict, Type

from credstore.service.errors import ValidationError

MAX_USERNAME_LENGTH = 64


class UsernameError(ValidationError):
    error_code = "invalid_username"


class EmptyUsername(UsernameError):
    def __init__(self) -> None:
        super().__init__("Username must not be empty string.")


class UsernameTooLong(UsernameError):
    def __init__(self, maximum: int = MAX_USERNAME_LENGTH) -> None:
        super().__init__("Username too long.", detail={"maximum": maximum})


class NonAsciiUsername(UsernameError):
    def __init__(self) -> None:
        super().__init__("Non-ASCII characters found in username.")


class NonPrintableUsername(UsernameError):
    def __init__(self) -> None:
        super().__init__("Non-printable characters found in username.")


class InvalidEmailUsername(UsernameError):
    def __init__(self) -> None:
        super().__init__("Username is not a valid email")


@functools.total_ordering
class Username:
    """Base identifier policy. Subclasses implement ``_check``."""

    __slots__ = ("_value",)

    max_length: int = MAX_USERNAME_LENGTH

    def __init__(self, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("username must be a string")
        value = value.strip()
        if not value:
            raise EmptyUsername()
        if len(value) > self.max_length:
            raise UsernameTooLong(self.max_length)
        self._check(value)
        self._value = value

    @classmethod
    def parse(cls, value: str) -> "Username":
        return cls(value)

    def _check(self, value: str) -> None:
        raise NotImplementedError

    @property
    def key(self) -> str:
        """Case-folded form used for equality, ordering and lookups."""
        return self._value.lower()

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Username) or type(other) is not type(self):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Username) or type(other) is not type(self):
            return NotImplemented
        return self.key < other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __len__(self) -> int:
        return len(self._value)


class AsciiUsername(Username):
    """Printable ASCII without whitespace."""

    __slots__ = ()

    def _check(self, value: str) -> None:
        for char in value:
            if not char.isascii():
                raise NonAsciiUsername()
            # graphic ASCII is 0x21..0x7e
            if not ("!" <= char <= "~"):
                raise NonPrintableUsername()


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


class EmailUsername(Username):
    __slots__ = ()

    @property
    def key(self) -> str:
        return self._value.casefold()

    def _check(self, value: str) -> None:
        local, sep, domain = value.partition("@")
        if not sep or not local or not domain:
            raise InvalidEmailUsername()
        if not _EMAIL_LOCAL_PART.match(local):
            raise InvalidEmailUsername()
        domain_parts = domain.split(".")
        if len(domain_parts) < 2:
            raise InvalidEmailUsername()
        for label in domain_parts:
            if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
                raise InvalidEmailUsername()


USERNAME_POLICIES: Dict[str, Type[Username]] = {
    "ascii": AsciiUsername,
    "email": EmailUsername,
}


def get_username_policy(name: Any) -> Type[Username]:
    try:
        return USERNAME_POLICIES[str(name).lower()]
    except KeyError:
        raise ValueError(f"unknown username policy: {name}") from None


__all__ = [
    "Username",
    "AsciiUsername",
    "EmailUsername",
    "UsernameError",
    "EmptyUsername",
    "UsernameTooLong",
    "NonAsciiUsername",
    "NonPrintableUsername",
    "InvalidEmailUsername",
    "USERNAME_POLICIES",
    "get_username_policy",
]
