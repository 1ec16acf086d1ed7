from __future__ import annotations

import hashlib
import hmac
from typing import TYPE_CHECKING, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from pydantic import SecretBytes, SecretStr

from credstore.logging import get_logger
from credstore.service.errors import (
    IterationTooWeak,
    MalformedHash,
    MemoryUseTooWeak,
    ParallelismTooWeak,
    PasswordTooShort,
    PepperTooWeak,
    StrategyError,
)

if TYPE_CHECKING:
    from credstore.config import Settings

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MIN_PEPPER_BYTES = 8
MIN_MEMORY_MIB = 15
MIN_ITERATIONS = 2
MIN_PARALLELISM = 1

PepperT = Union[bytes, str, SecretBytes, SecretStr]


class PasswordStrategy(Protocol):
    def generate_password_hash(self, password: str) -> SecretStr: ...

    def verify_password(self, password_hash: str, password: str) -> bool: ...

    def needs_rehash(self, password_hash: str) -> bool: ...


def _pepper_bytes(pepper: PepperT) -> bytes:
    if isinstance(pepper, (SecretBytes, SecretStr)):
        pepper = pepper.get_secret_value()
    if isinstance(pepper, str):
        return pepper.encode("utf-8")
    return bytes(pepper)


class Argon2idStrategy:
    """Argon2id hashing keyed by a server-side pepper.

    The pepper keys an HMAC-SHA256 of the password and the hex digest is what
    Argon2id hashes, so a leaked hash table is useless without the pepper.
    Hashes are PHC strings carrying their own salt and cost parameters.
    """

    def __init__(
        self,
        pepper: PepperT,
        memory_mib: int,
        iteration_count: int,
        parallelism_degree: int,
    ) -> None:
        raw_pepper = _pepper_bytes(pepper)
        if len(raw_pepper) < MIN_PEPPER_BYTES:
            raise PepperTooWeak(MIN_PEPPER_BYTES)
        if memory_mib < MIN_MEMORY_MIB:
            raise MemoryUseTooWeak(MIN_MEMORY_MIB)
        if iteration_count < MIN_ITERATIONS:
            raise IterationTooWeak(MIN_ITERATIONS)
        if parallelism_degree < MIN_PARALLELISM:
            raise ParallelismTooWeak(MIN_PARALLELISM)

        self._pepper = SecretBytes(raw_pepper)
        self.memory_mib = memory_mib
        self.iteration_count = iteration_count
        self.parallelism_degree = parallelism_degree
        self._hasher = PasswordHasher(
            time_cost=iteration_count,
            memory_cost=memory_mib * 1024,
            parallelism=parallelism_degree,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Argon2idStrategy":
        return cls(
            settings.password_pepper,
            memory_mib=settings.argon2_memory_mib,
            iteration_count=settings.argon2_iterations,
            parallelism_degree=settings.argon2_parallelism,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(memory_mib={self.memory_mib}, "
            f"iteration_count={self.iteration_count}, "
            f"parallelism_degree={self.parallelism_degree})"
        )

    def _peppered(self, password: str) -> str:
        return hmac.new(
            self._pepper.get_secret_value(), password.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def generate_password_hash(self, password: str) -> SecretStr:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise PasswordTooShort(MIN_PASSWORD_LENGTH)
        return SecretStr(self._hasher.hash(self._peppered(password)))

    def verify_password(self, password_hash: str, password: str) -> bool:
        """Return whether ``password`` matches; parameters come from the hash."""
        if isinstance(password_hash, SecretStr):
            password_hash = password_hash.get_secret_value()
        try:
            return self._hasher.verify(password_hash, self._peppered(password))
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            logger.warning("password_hash_malformed")
            raise MalformedHash(str(exc)) from exc
        except VerificationError as exc:
            raise StrategyError(f"Password verification failed: {exc}") from exc

    def needs_rehash(self, password_hash: str) -> bool:
        if isinstance(password_hash, SecretStr):
            password_hash = password_hash.get_secret_value()
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError as exc:
            raise MalformedHash(str(exc)) from exc


__all__ = [
    "PasswordStrategy",
    "Argon2idStrategy",
    "MIN_PASSWORD_LENGTH",
]
