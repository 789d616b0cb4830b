from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - invalid_credentials (401)
    - token_invalid / token_expired (401)
    - forbidden (403)
    - not_found (404)
    - already_exists (409)
    - account_locked (423)
    - validation_failed (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_failed"

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
    """Missing or malformed field, weak password, or missing consent (400)."""
    status_code = 400
    error_code = "validation_failed"

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        if field:
            detail.setdefault("field", field)
        super().__init__(message, detail=detail, **kwargs)
        self.field = field


class InvalidCredentialsError(ServiceError):
    """Unknown identifier or wrong password; the two are indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(ServiceError):
    """Token is malformed, badly signed, of the wrong type, or revoked (401)."""
    status_code = 401
    error_code = "token_invalid"


class TokenExpiredError(TokenInvalidError):
    """Token signature is valid but its expiry has passed (401)."""
    error_code = "token_expired"


class ForbiddenError(ServiceError):
    """Authenticated but not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """No live identity for the requested id (404)."""
    status_code = 404
    error_code = "not_found"


class AlreadyExistsError(ServiceError):
    """Email, phone or role key collides with a live identity (409)."""
    status_code = 409
    error_code = "already_exists"

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        if field:
            detail.setdefault("field", field)
        super().__init__(message, detail=detail, **kwargs)
        self.field = field


class AccountLockedError(ServiceError):
    """Lockout window active or account suspended (423)."""
    status_code = 423
    error_code = "account_locked"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "AlreadyExistsError",
    "AccountLockedError",
    "ServerError",
]
