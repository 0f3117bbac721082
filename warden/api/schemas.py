from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    # Auth flow codes clients branch on
    "WRONG_CHALLENGE",
    "USERNAME_ALREADY_TAKEN",
    "WAIT_TOO_MANY_ATTEMPTS",
    "WRONG_VERIFICATION_CODE",
    "MFA_ALREADY_ACTIVATED",
    "OTPAUTH_ERROR",
    "MFA_NOT_ACTIVATED",
    "MFA_ALREADY_DEACTIVATED",
    "INTERNAL_SERVER_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

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
    """Strip zero-width and bidi override characters, then NFKC normalize."""
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


_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_PERMISSION_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.:-]+$")


def _validate_name(value: str) -> str:
    """Usernames: alphanumeric with underscores, dots and hyphens, max 64 chars."""
    value = _normalize_unicode(value.strip())
    if not value:
        raise ValueError("name must be at least 1 character")
    if len(value) > 64:
        raise ValueError("name must be at most 64 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError(
            "name must contain only alphanumeric characters, underscores, dots, and hyphens"
        )
    return value


def _validate_grant_name(value: str) -> str:
    value = value.strip()
    if not value or len(value) > 128:
        raise ValueError("name must be between 1 and 128 characters")
    if not _PERMISSION_NAME_PATTERN.match(value):
        raise ValueError("name may contain letters, digits, and _ . : -")
    return value


class _WireModel(BaseModel):
    """Request bodies use the camelCase field names of the public API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InitLoginRequest(_WireModel):
    username: str = Field(..., min_length=1, max_length=254)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not value:
            raise ValueError("username is required")
        # Names cannot contain "@"; emails are stored lowercased
        if "@" in value:
            value = value.lower()
        return value


class VerifyChallengeRequest(_WireModel):
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=64)
    processed_challenge: str = Field(
        ..., alias="processedChallenge", min_length=1, max_length=512
    )
    remember_me: bool = Field(default=False, alias="rememberMe")


class RegisterRequest(_WireModel):
    name: str
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class SendVerificationEmailRequest(_WireModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_send_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyEmailRequest(_WireModel):
    email: str
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class ConfirmMfaActivationRequest(_WireModel):
    token: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class VerifyMfaRequest(_WireModel):
    key: str = Field(..., min_length=1, max_length=128)
    token: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")
    remember_me: bool = Field(default=False, alias="rememberMe")


class RoleRequest(_WireModel):
    name: str
    permissions: List[str] = Field(default_factory=list, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_role_name(cls, value: str) -> str:
        return _validate_grant_name(value)


class RoleUpdateRequest(_WireModel):
    name: Optional[str] = None
    permissions: Optional[List[str]] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_role_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_grant_name(value) if value is not None else None


class PermissionRequest(_WireModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_permission_name(cls, value: str) -> str:
        return _validate_grant_name(value)


class RoleGrantRequest(_WireModel):
    user_id: int = Field(..., alias="userId", ge=1)
    role_id: int = Field(..., alias="roleId", ge=1)


class PermissionGrantRequest(_WireModel):
    user_id: int = Field(..., alias="userId", ge=1)
    permission_id: int = Field(..., alias="permissionId", ge=1)
