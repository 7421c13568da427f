from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - access_token_expired (401)
    - forbidden (403)
    - email_not_verified (403)
    - not_found (404)
    - conflict (409, or 400 where the caller asks for it)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AccessTokenExpiredError(AuthenticationError):
    """Access token was valid but has expired; the client should refresh (401)."""
    error_code = "access_token_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient privilege or relationship (403)."""
    status_code = 403
    error_code = "forbidden"


AuthorizationError = ForbiddenError


class EmailNotVerifiedError(ForbiddenError):
    """The operation requires a verified email address (403)."""
    error_code = "email_not_verified"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InfrastructureError(ServerError):
    """A store, cache or mail transport was unavailable; safe to retry (500)."""

    def __init__(self, message: str, **kwargs) -> None:
        detail = {"retryable": True, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "AccessTokenExpiredError",
    "ForbiddenError",
    "AuthorizationError",
    "EmailNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InfrastructureError",
]
