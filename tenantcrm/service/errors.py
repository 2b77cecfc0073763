from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)

    ``default_message`` is the client-facing text used when the caller does
    not supply one. Subclasses that share a message on purpose (expired vs
    invalid tokens, lockout vs bad password) differ only in class name, which
    is what gets logged.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request failed"

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


class ValidationFailed(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "Validation failed"


class TenantNotResolved(ValidationFailed):
    """No tenant identifier was supplied where one is mandatory (400)."""
    default_message = "Tenant context is required"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class AuthenticationRequired(AuthenticationError):
    pass


class InvalidCredentials(AuthenticationError):
    default_message = "Invalid credentials"


class AccountLocked(InvalidCredentials):
    """Lockout is active; indistinguishable from a wrong password to clients."""


class TokenExpired(AuthenticationError):
    default_message = "Invalid or expired token"


class TokenInvalid(AuthenticationError):
    default_message = "Invalid or expired token"


class TokenRevoked(AuthenticationError):
    default_message = "Token has been revoked"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Access denied"


class TenantAccessDenied(ForbiddenError):
    default_message = "Access denied: cannot access other tenant resources"


class InsufficientPermission(ForbiddenError):
    default_message = "Insufficient permissions"


class OwnershipDenied(ForbiddenError):
    default_message = "Access denied. You can only access your own resources."


class ModuleDisabled(ForbiddenError):
    default_message = "This module is not enabled for your organization"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Resource not found"


class TenantNotFound(NotFoundError):
    default_message = "Tenant not found or inactive"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "Resource already exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests, please try again later"


__all__ = [
    "ServiceError",
    "ValidationFailed",
    "TenantNotResolved",
    "AuthenticationError",
    "AuthenticationRequired",
    "InvalidCredentials",
    "AccountLocked",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "ForbiddenError",
    "TenantAccessDenied",
    "InsufficientPermission",
    "OwnershipDenied",
    "ModuleDisabled",
    "NotFoundError",
    "TenantNotFound",
    "ConflictError",
    "RateLimitedError",
]
