from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - validation_error (400)
    - invalid_code (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class AccountExistsError(ConflictError):
    default_message = "account already exists"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password, or an unusable token.

    The message is identical for every cause so callers cannot probe
    which accounts exist.
    """

    default_message = "invalid credentials"


class PasswordMismatchError(ValidationError):
    default_message = "passwords do not match"


class PasswordAlreadySetError(ConflictError):
    default_message = "password already set"


class CodeExpiredOrInvalidError(ServiceError):
    status_code = 400
    error_code = "invalid_code"
    default_message = "invalid or expired code"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "ServerError",
    "AccountExistsError",
    "InvalidCredentialsError",
    "PasswordMismatchError",
    "PasswordAlreadySetError",
    "CodeExpiredOrInvalidError",
]
