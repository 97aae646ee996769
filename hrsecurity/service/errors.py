from __future__ import annotations

from datetime import datetime
from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized / invalid_credentials / invalid_mfa_code (401)
    - forbidden (403)
    - not_found (404)
    - conflict / mfa_not_enabled / mfa_already_enabled (409)
    - policy_violation (422)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account, inactive account, or wrong password (401).

    The message never varies so callers cannot tell which case occurred.
    """
    error_code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidMfaCodeError(AuthenticationError):
    """TOTP or backup code rejected (401)."""
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "invalid verification code") -> None:
        super().__init__(message)


class AccountLockedError(ServiceError):
    """Too many failed attempts; the account is temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: Optional[datetime]) -> None:
        super().__init__(
            "account temporarily locked",
            detail={"locked_until": locked_until.isoformat() if locked_until else None},
        )
        self.locked_until = locked_until


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
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


class MfaNotEnabledError(ConflictError):
    error_code = "mfa_not_enabled"

    def __init__(self) -> None:
        super().__init__("MFA is not enabled for this account")


class MfaAlreadyEnabledError(ConflictError):
    error_code = "mfa_already_enabled"

    def __init__(self) -> None:
        super().__init__("MFA is already enabled for this account")


class PolicyViolationError(ServiceError):
    """Input breaks a tenant security rule (422)."""
    status_code = 422
    error_code = "policy_violation"

    def __init__(
        self,
        message: str,
        *,
        violations: Optional[List[str]] = None,
        field: Optional[str] = None,
    ) -> None:
        detail: dict = {"violations": list(violations or [message])}
        if field:
            detail["field"] = field
        super().__init__(message, detail=detail)
        self.violations = detail["violations"]
        self.field = field


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidMfaCodeError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "MfaNotEnabledError",
    "MfaAlreadyEnabledError",
    "PolicyViolationError",
    "ServerError",
]
