from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500, 503)
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
    """Authentication failed or missing (401).

    ``reason`` is surfaced to clients as ``details.reason``.
    """
    status_code = 401
    error_code = "unauthorized"
    reason: str = "InvalidToken"

    def __init__(self, message: str, *, detail: Optional[dict] = None, **kwargs) -> None:
        merged = {"reason": self.reason}
        merged.update(detail or {})
        super().__init__(message, detail=merged, **kwargs)


class AuthRequiredError(AuthenticationError):
    """No bearer credential was presented."""
    reason = "AuthRequired"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, has a bad signature or the wrong type."""
    reason = "InvalidToken"


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but it has expired."""
    reason = "TokenExpired"


class SessionRevokedError(AuthenticationError):
    """Refresh token verifies but has no live session record."""
    reason = "InvalidToken"


class InvalidCredentialsError(AuthenticationError):
    """Wrong password, unknown account or failed one-time code."""
    reason = "InvalidCredentials"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDeletedError(ForbiddenError):
    def __init__(self, message: str = "account has been deleted", **kwargs) -> None:
        super().__init__(message, detail={"reason": "AccountDeleted"}, **kwargs)


class AccountPendingError(ForbiddenError):
    def __init__(self, message: str = "account is pending approval", **kwargs) -> None:
        super().__init__(message, detail={"reason": "AccountPending"}, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate account (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after: int = 60,
        headers: Optional[dict[str, str]] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after
        self.headers = dict(headers or {})
        self.headers["Retry-After"] = str(retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServerError):
    """Backing store failed during a security-relevant operation (503)."""
    status_code = 503


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthRequiredError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SessionRevokedError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "AccountDeletedError",
    "AccountPendingError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailableError",
]
