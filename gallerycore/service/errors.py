from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    it is rendered with:
    - unauthorized (401)
    - invalid_refresh_token (401)
    - quota_exceeded (402)
    - account_inactive (403)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - validation_error (400)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthenticatedError(ServiceError):
    """Missing, malformed or expired access credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidOrReusedTokenError(UnauthenticatedError):
    """Refresh token unknown, expired, revoked or owned by an unusable account.

    The message is identical for every cause.
    """
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class QuotaExceededError(ServiceError):
    """Token budget insufficient for the requested operation (402)."""
    status_code = 402
    error_code = "quota_exceeded"


class AccountInactiveError(ServiceError):
    """Account disabled (403)."""
    status_code = 403
    error_code = "account_inactive"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Login temporarily blocked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthenticatedError",
    "InvalidOrReusedTokenError",
    "QuotaExceededError",
    "AccountInactiveError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "ServerError",
]
