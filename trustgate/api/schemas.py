from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from trustgate.storage.models import Principal, PrincipalStatus

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "mfa_required",
    "invalid_mfa_code",
    "account_blocked",
    "account_suspended",
    "account_expired",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if not 3 <= len(normalized) <= 64:
        raise ValueError("username must be between 3 and 64 characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username must contain only alphanumeric characters, dots, underscores, and hyphens"
        )
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class SignupRequest(BaseModel):
    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _validate_signup_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SigninRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    mfa_code: Optional[str] = Field(default=None, max_length=32)


class AuthResponse(BaseModel):
    user_id: str
    username: str
    roles: List[str]
    access_token: str
    token_type: str = "Bearer"
    expires_at: datetime


class PrincipalResponse(BaseModel):
    id: str
    username: str
    email: str
    roles: List[str]
    status: str
    status_reason: Optional[str] = None
    failed_attempts: int = 0
    account_expires_at: Optional[datetime] = None
    mfa_enabled: bool = False
    created_at: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            username=principal.username,
            email=principal.email,
            roles=sorted(role.value for role in principal.roles),
            status=principal.status.value,
            status_reason=principal.status_reason,
            failed_attempts=principal.failed_attempts,
            account_expires_at=principal.account_expires_at,
            mfa_enabled=principal.mfa_enabled,
            created_at=principal.created_at,
        )


class PrincipalListResponse(BaseModel):
    items: List[PrincipalResponse]


class MFACodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class MFARecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class MFAStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether MFA is currently enabled")
    configured: bool = Field(..., description="Whether an MFA secret is stored (possibly pending)")
    recovery_codes_remaining: int = 0


class ForgotPasswordRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)


class ForgotPasswordResponse(BaseModel):
    user_id: str
    reset_token: str
    expires_at: datetime
    mfa_required: bool


class PasswordResetConfirm(BaseModel):
    user_id: str = Field(..., max_length=64)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class StatusUpdateRequest(BaseModel):
    status: PrincipalStatus
    reason: Optional[str] = Field(default=None, max_length=512)


class RateLimitConfigResponse(BaseModel):
    max_requests: int
    public_max_requests: int
    window_seconds: int
    whitelist: List[str]


class RateLimitUpdateRequest(BaseModel):
    """Only provided fields are updated."""

    max_requests: Optional[int] = Field(default=None, ge=1)
    public_max_requests: Optional[int] = Field(default=None, ge=1)
    window_seconds: Optional[int] = Field(default=None, ge=1, le=86400)

    @model_validator(mode="after")
    def _require_one_field(self):
        if (
            self.max_requests is None
            and self.public_max_requests is None
            and self.window_seconds is None
        ):
            raise ValueError("at least one limit must be provided")
        return self
