from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409, or 400 for ledger rule violations)
    - upstream_error (502)
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


class InvalidPhoneError(ValidationError):
    """Phone number is not a valid 10-digit mobile number (400)."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Bearer token is past its expiry (401)."""
    pass


class TokenInvalidError(AuthenticationError):
    """Bearer token is malformed, tampered with, or of the wrong class (401)."""
    pass


class RefreshRevokedError(AuthenticationError):
    """Refresh token is well-formed but no longer the account's current one (401)."""
    pass


class InvalidCodeError(AuthenticationError):
    """OTP code did not verify.

    Answered with 400 rather than 401: the caller holds no credential yet,
    the submitted form is simply wrong.
    """
    status_code = 400

    def __init__(self, message: str = "invalid or expired code", **kwargs) -> None:
        kwargs.setdefault("detail", {"verified": False})
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - blocked account, disabled module, or foreign resource (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. concurrent balance update that kept losing (409)."""
    status_code = 409
    error_code = "conflict"


class InsufficientBalanceError(ConflictError):
    """Token balance does not cover the order (400)."""
    status_code = 400


class NotCancellableError(ConflictError):
    """Order is in a status that cannot be cancelled (400)."""
    status_code = 400


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class CooldownError(RateLimitedError):
    """A challenge for this phone was issued too recently (429)."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            f"please wait {retry_after} seconds before requesting a new code",
            detail={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class UpstreamError(ServiceError):
    """Record store, cache, or vendor API unreachable or erroring (502).

    The only error class eligible for automatic retry.
    """
    status_code = 502
    error_code = "upstream_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CompensationFailedError(ServerError):
    """A refund after a failed saga step did not go through (500)."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidPhoneError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "RefreshRevokedError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InsufficientBalanceError",
    "NotCancellableError",
    "RateLimitedError",
    "CooldownError",
    "UpstreamError",
    "ServerError",
    "CompensationFailedError",
]
