from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - unauthorized / mfa_required / invalid_mfa_code (401)
    - forbidden / account_blocked / account_suspended / account_expired (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500) / service_unavailable (503)
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


class InvalidTokenError(AuthenticationError):
    """A bearer token was rejected.

    Every subclass renders the same client-visible message so callers cannot
    tell a forged token from an expired or revoked one. ``reason`` is for
    server-side logs only.
    """

    reason = "invalid"
    public_message = "invalid or expired token"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(self.public_message, **kwargs)
        self.internal_message = message or self.reason


class MalformedTokenError(InvalidTokenError):
    reason = "malformed"


class BadSignatureError(InvalidTokenError):
    reason = "bad_signature"


class ExpiredTokenError(InvalidTokenError):
    reason = "expired"


class RevokedTokenError(InvalidTokenError):
    reason = "revoked"


class WrongTokenKindError(InvalidTokenError):
    reason = "wrong_kind"


class SessionNotLiveError(InvalidTokenError):
    reason = "session_not_live"


class BadCredentialsError(AuthenticationError):
    """Username or password did not match (401)."""

    def __init__(self, message: str = "Invalid username or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaRequiredError(AuthenticationError):
    """Password accepted but a second factor is required (401)."""
    error_code = "mfa_required"

    def __init__(self, message: str = "MFA code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidMfaCodeError(AuthenticationError):
    """TOTP or recovery code rejected (401)."""
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid MFA code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ForbiddenAdminTargetError(ForbiddenError):
    """Attempt to change the status of a principal holding the admin role."""

    def __init__(self, message: str = "Cannot modify admin user status", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountBlockedError(ForbiddenError):
    error_code = "account_blocked"

    def __init__(
        self, message: str = "Account is locked. Please contact an administrator.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class AccountSuspendedReadOnlyError(ForbiddenError):
    error_code = "account_suspended"

    def __init__(self, message: str = "Account suspended - Read only access", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountExpiredError(ForbiddenError):
    error_code = "account_expired"

    def __init__(
        self, message: str = "Account expired. Please contact an administrator.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


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

    def __init__(
        self, message: str = "Rate limit exceeded. Please try again later.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CredentialStoreError(ServerError):
    """The credential store failed mid-operation (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "MalformedTokenError",
    "BadSignatureError",
    "ExpiredTokenError",
    "RevokedTokenError",
    "WrongTokenKindError",
    "SessionNotLiveError",
    "BadCredentialsError",
    "MfaRequiredError",
    "InvalidMfaCodeError",
    "ForbiddenError",
    "ForbiddenAdminTargetError",
    "AccountBlockedError",
    "AccountSuspendedReadOnlyError",
    "AccountExpiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "CredentialStoreError",
]
