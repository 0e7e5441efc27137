from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass defines an HTTP-equivalent ``status_code`` and a stable
    ``error_code`` so the transport layer can map errors without parsing
    messages. Messages are deliberately generic; internal detail is logged,
    never attached.
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


class AuthenticationError(ServiceError):
    """Bad credentials (401). Never says which credential was wrong."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """Token expired, malformed, wrong type, revoked, or lost a rotation race (401)."""
    error_code = "invalid_token"


class TwoFactorError(AuthenticationError):
    """Invalid code, no pending setup, or recovery codes exhausted (401)."""
    error_code = "two_factor_failed"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class TenantMismatchError(ForbiddenError):
    """Token tenant and request tenant disagree (403)."""
    error_code = "tenant_mismatch"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. email already registered in this tenant (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many failed attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


class SocialProviderError(ServiceError):
    """Provider exchange failed or returned an unusable profile (502).

    ``retryable`` is True for timeouts and transport failures, where the user
    may simply try again.
    """
    status_code = 502
    error_code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(
            message, status_code=status_code, detail=detail, error_code=error_code
        )
        self.retryable = retryable


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "TwoFactorError",
    "ForbiddenError",
    "TenantMismatchError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "SocialProviderError",
    "ServerError",
]
