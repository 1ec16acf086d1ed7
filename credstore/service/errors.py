from __future__ import annotations

from typing import Optional


class CredstoreError(Exception):
    """Base class for credstore exceptions.

    Each class carries a stable ``error_code`` so callers can branch without
    string matching. ``public_message`` is what may be shown to an untrusted
    party; ``message`` is for logs and may be more specific.
    """

    error_code: str = "error"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def safe_message(self) -> str:
        return self.public_message or self.message


class ValidationError(CredstoreError):
    """Input or configuration rejected synchronously; never retried."""
    error_code = "validation_error"


class PasswordTooShort(ValidationError):
    error_code = "password_too_short"

    def __init__(self, minimum: int = 8) -> None:
        super().__init__(
            f"Password must be at least {minimum} characters.",
            detail={"minimum": minimum},
        )


class WeakStrategyConfig(ValidationError):
    """Password strategy parameters below the enforced floor."""
    error_code = "weak_strategy_config"


class PepperTooWeak(WeakStrategyConfig):
    error_code = "pepper_too_weak"

    def __init__(self, minimum: int = 8) -> None:
        super().__init__(
            f"Provided pepper is too weak. Minimum size: {minimum}",
            detail={"minimum": minimum},
        )


class MemoryUseTooWeak(WeakStrategyConfig):
    error_code = "memory_use_too_weak"

    def __init__(self, minimum: int = 15) -> None:
        super().__init__(
            f"Memory use is too weak. Minimum size: {minimum} MiB",
            detail={"minimum": minimum},
        )


class IterationTooWeak(WeakStrategyConfig):
    error_code = "iteration_too_weak"

    def __init__(self, minimum: int = 2) -> None:
        super().__init__(
            f"Too few iterations. Minimum: {minimum}", detail={"minimum": minimum}
        )


class ParallelismTooWeak(WeakStrategyConfig):
    error_code = "parallelism_too_weak"

    def __init__(self, minimum: int = 1) -> None:
        super().__init__(
            f"Parallelism must be at least {minimum}.", detail={"minimum": minimum}
        )


class NotFoundError(CredstoreError):
    """Record absent or expired."""
    error_code = "not_found"


class SessionNotFound(NotFoundError):
    error_code = "session_not_found"

    def __init__(self, session_id: object) -> None:
        super().__init__(
            f"Session not found for given id {str(session_id)[:8]}",
            detail={"session_prefix": str(session_id)[:8]},
        )
        self.session_id = session_id


class PasswordResetNotFound(NotFoundError):
    error_code = "password_reset_not_found"

    def __init__(self, reset_id: object) -> None:
        super().__init__(
            f"Password reset id not found: {str(reset_id)[:8]}",
            detail={"reset_prefix": str(reset_id)[:8]},
        )
        self.reset_id = reset_id


class AppAuthNotFound(NotFoundError):
    error_code = "appauth_not_found"
    public_message = "invalid credentials"

    def __init__(self, appauth_id: object) -> None:
        super().__init__(
            f"AppAuth record not found for id {appauth_id}",
            detail={"appauth_id": str(appauth_id)},
        )
        self.appauth_id = appauth_id


class UserNotFound(NotFoundError):
    error_code = "user_not_found"
    public_message = "invalid credentials"

    def __init__(self, lookup: object) -> None:
        super().__init__(f"User not found: {lookup}")
        self.lookup = lookup


class AuthenticationError(CredstoreError):
    """A presented credential was rejected.

    The public message is shared with the not-found errors that could otherwise
    reveal whether an account or credential exists.
    """
    error_code = "unauthorized"
    public_message = "invalid credentials"


class InvalidToken(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "The provided token was invalid.") -> None:
        super().__init__(message)


class InvalidPassword(AuthenticationError):
    error_code = "invalid_password"

    def __init__(self, message: str = "The entered password was invalid.") -> None:
        super().__init__(message)


class AuthenticationFailed(AuthenticationError):
    """Login failed; ``reason`` says why, for logging only."""
    error_code = "authentication_failed"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Authentication failed: {reason}", detail={"reason": reason})
        self.reason = reason


class StrategyError(CredstoreError):
    """The hashing backend failed for a reason other than a wrong password."""
    error_code = "strategy_error"


class MalformedHash(StrategyError):
    error_code = "malformed_hash"

    def __init__(self, reason: str = "") -> None:
        message = "Stored password hash is malformed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CacheDecodeError(CredstoreError):
    """A cached blob could not be deserialized."""
    error_code = "cache_decode_error"


__all__ = [
    "CredstoreError",
    "ValidationError",
    "PasswordTooShort",
    "WeakStrategyConfig",
    "PepperTooWeak",
    "MemoryUseTooWeak",
    "IterationTooWeak",
    "ParallelismTooWeak",
    "NotFoundError",
    "SessionNotFound",
    "PasswordResetNotFound",
    "AppAuthNotFound",
    "UserNotFound",
    "AuthenticationError",
    "InvalidToken",
    "InvalidPassword",
    "AuthenticationFailed",
    "StrategyError",
    "MalformedHash",
    "CacheDecodeError",
]
