from __future__ import annotations

from enum import Enum
from typing import Optional


class LoginErrorCode(str, Enum):
    """Reason a credential check was refused; the only detail a client sees."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    PASSWORD_EXPIRED = "PASSWORD_EXPIRED"
    NO_ACTIVE_COMPANIES = "NO_ACTIVE_COMPANIES"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden / mfa_required (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
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
    """Request is well-formed but not acceptable in the current state."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class LoginFailedError(AuthenticationError):
    """Credential check refused; ``code`` says which category, nothing more."""

    _MESSAGES = {
        LoginErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
        LoginErrorCode.ACCOUNT_LOCKED: "Account is temporarily locked",
        LoginErrorCode.ACCOUNT_INACTIVE: "Account is inactive",
        LoginErrorCode.PASSWORD_EXPIRED: "Password must be reset",
        LoginErrorCode.NO_ACTIVE_COMPANIES: "No active company access",
    }

    def __init__(self, code: LoginErrorCode, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            self._MESSAGES[code],
            detail={"login_error": code.value, **(detail or {})},
        )
        self.code = code


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class MfaRequiredError(ForbiddenError):
    """Session has not completed the second factor (403)."""
    error_code = "mfa_required"

    def __init__(self, message: str = "MFA verification required", **kwargs) -> None:
        detail = {"requires_mfa": True, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "LoginErrorCode",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "LoginFailedError",
    "SessionExpiredError",
    "ForbiddenError",
    "MfaRequiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
