from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field, field_validator

from pixora_auth.logging import get_correlation_id
from pixora_auth.storage.models import PROFILE_FIELDS, ROLES

MAX_PROFILE_VALUE_LENGTH = 255


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters.

    Keeps visually identical addresses from registering as distinct accounts.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "account_locked",
    "account_disabled",
    "invalid_two_factor_code",
    "invalid_or_expired_token",
    "invalid_token",
    "token_expired",
    "wrong_token_kind",
    "token_revoked",
    "session_invalid",
    "account_inactive",
    "forbidden",
    "not_found",
    "conflict",
    "duplicate_email",
    "rate_limited",
    "storage_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

    code: str
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
    """Uniform response wrapper for every endpoint."""

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PASSWORD_SPECIALS = "@$!%*?&"


def _validate_password_strength(value: str) -> str:
    """8-128 chars with a lowercase letter, an uppercase letter, a digit and a symbol."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        raise ValueError(f"password must contain one of {_PASSWORD_SPECIALS}")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name must not be empty")
    if len(cleaned) > 50:
        raise ValueError("name must be at most 50 characters")
    return cleaned


_TOTP_CODE = re.compile(r"^\d{6}$")
_BACKUP_CODE = re.compile(r"^[0-9A-Fa-f]{4}-?[0-9A-Fa-f]{4}$")


def _validate_totp_code(value: str) -> str:
    value = value.strip()
    if not _TOTP_CODE.match(value):
        raise ValueError("two-factor code must be 6 digits")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str = Field(validation_alias=AliasChoices("first_name", "firstName"))
    last_name: str = Field(validation_alias=AliasChoices("last_name", "lastName"))
    profile: Optional[Dict[str, str]] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if value is None:
            return None
        unknown = sorted(set(value) - set(PROFILE_FIELDS))
        if unknown:
            raise ValueError(f"unknown profile fields: {', '.join(unknown)}")
        for key, item in value.items():
            if len(item) > MAX_PROFILE_VALUE_LENGTH:
                raise ValueError(f"{key} must be at most {MAX_PROFILE_VALUE_LENGTH} characters")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    two_factor_code: Optional[str] = Field(
        default=None,
        max_length=16,
        validation_alias=AliasChoices("two_factor_code", "twoFactorCode"),
    )
    remember_me: bool = Field(
        default=False, validation_alias=AliasChoices("remember_me", "rememberMe")
    )

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("two_factor_code")
    @classmethod
    def _validate_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip()
        # Either a TOTP code or a backup code
        if not _TOTP_CODE.match(value) and not _BACKUP_CODE.match(value):
            raise ValueError("two-factor code must be 6 digits or an 8 character backup code")
        return value


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(
        ...,
        max_length=4096,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=4096,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=4096)
    password: str = Field(validation_alias=AliasChoices("password", "new_password"))

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(
        ...,
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("current_password", "currentPassword"),
    )
    new_password: str = Field(validation_alias=AliasChoices("new_password", "newPassword"))

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=4096)


class TwoFactorSetupRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorCodeRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_totp_code(value)


class UpdateUserRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        if value not in ROLES:
            raise ValueError(f"role must be one of: {', '.join(ROLES)}")
        return value


class UpdateUserStatusRequest(BaseModel):
    is_active: bool = Field(validation_alias=AliasChoices("is_active", "isActive"))


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


class AuthResponse(BaseModel):
    user: Optional[Dict[str, Any]] = None
    tokens: Optional[TokenResponse] = None
    two_factor_required: bool = False


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    backup_codes: List[str]


class UserListResponse(BaseModel):
    items: List[Dict[str, Any]]
    limit: int
    offset: int
