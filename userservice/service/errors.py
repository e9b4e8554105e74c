from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Error raised by the service layer and rendered as an error envelope.

    Subclasses fix the HTTP status and the machine readable ``error_code``:
    - unauthorized (401)
    - account_locked (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any state changed."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Input is valid but the account state does not allow the operation."""
    pass


class AuthenticationError(ServiceError):
    """Caller could not be authenticated."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Login rejected because the account is inside its lockout window."""

    error_code = "account_locked"

    def __init__(
        self,
        locked_until: Optional[datetime] = None,
        *,
        retry_after_seconds: Optional[int] = None,
        message: str = "Account is temporarily locked due to too many failed login attempts",
    ) -> None:
        detail: dict = {}
        if locked_until is not None:
            detail["locked_until"] = locked_until.isoformat()
        if retry_after_seconds is not None:
            detail["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, detail=detail)
        self.locked_until = locked_until
        self.retry_after_seconds = retry_after_seconds


class RefreshTokenInvalidError(AuthenticationError):
    def __init__(self, message: str = "Invalid or expired refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    """Access, verification, or reset token failed validation."""

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Caller is known but not allowed to proceed."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    """Credentials are valid but the account is not active."""


class NotFoundError(ServiceError):
    """No account matches the lookup."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Write collided with existing data."""
    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    """Email or username already registered."""


class ServerError(ServiceError):
    """Unexpected failure inside the service."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "RefreshTokenInvalidError",
    "InvalidOrExpiredTokenError",
    "ForbiddenError",
    "AccountDisabledError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "ServerError",
]
