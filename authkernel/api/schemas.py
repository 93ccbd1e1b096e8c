from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from authkernel.service.auth import is_valid_phone


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after dropping spoofing characters.

    Zero-width characters and bidirectional overrides are removed first so
    that visually identical names and addresses compare equal.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _AuthRequest(BaseModel):
    """Accepts both snake_case and camelCase field names."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class InitRequest(_AuthRequest):
    client: Optional[str] = Field(default=None, max_length=32)
    device: Optional[str] = Field(default=None, max_length=32)
    platform: Optional[str] = Field(default=None, max_length=32)
    unsupported: Optional[bool] = None
    key_id: Optional[str] = Field(default=None, max_length=512)
    attestation_object: Optional[str] = Field(default=None, max_length=65536)
    client_data_hash: Optional[str] = Field(default=None, max_length=512)
    challenge: Optional[str] = Field(default=None, max_length=512)
    bundle_id: Optional[str] = Field(default=None, max_length=255)
    team_id: Optional[str] = Field(default=None, max_length=64)
    app_version: Optional[str] = Field(default=None, max_length=64)

    def client_hint(self, header_value: Optional[str]) -> Optional[str]:
        hint = self.client or self.device or self.platform or header_value
        return hint.lower() if hint else None


class SignupRequest(_AuthRequest):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    country_code: Optional[str] = Field(default=None, max_length=4)
    terms: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if len(cleaned) < 2 or len(cleaned) > 100:
            raise ValueError("name must be between 2 and 100 characters")
        return cleaned

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @field_validator("terms")
    @classmethod
    def _validate_terms(cls, value: str) -> str:
        if value not in ("0", "1"):
            raise ValueError("you must agree to the terms")
        return value

    @model_validator(mode="after")
    def _validate_contact(self):
        if self.phone and not is_valid_phone(self.phone, self.country_code):
            raise ValueError("invalid phone number for country code")
        if not self.email and not self.phone:
            raise ValueError("email or phone number is required")
        return self


class SignupVerifyRequest(_AuthRequest):
    identifier: str = Field(..., max_length=254)
    otp: str = Field(..., max_length=16)


class LoginRequest(_AuthRequest):
    username_email: Optional[str] = Field(default=None, max_length=254)
    country_code: Optional[str] = Field(default=None, max_length=4)
    phone: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = Field(default=None, max_length=128)
    # Strictness is checked by the service so "true" strings are rejected, not coerced
    is_otp_login: Any = None


class LoginVerifyRequest(_AuthRequest):
    username_email: Optional[str] = Field(default=None, max_length=254)
    country_code: Optional[str] = Field(default=None, max_length=4)
    phone: Optional[str] = Field(default=None, max_length=32)
    otp: str = Field(..., max_length=16)


class TokenRefreshRequest(_AuthRequest):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(_AuthRequest):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(_AuthRequest):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordVerifyRequest(ForgotPasswordRequest):
    otp: str = Field(..., max_length=16)


class PasswordResetRequest(ForgotPasswordRequest):
    new_password: str
    reset_token: Optional[str] = Field(default=None, max_length=256)
    otp: Optional[str] = Field(default=None, max_length=16)

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class GoogleSignInRequest(_AuthRequest):
    id_token: str = Field(..., max_length=8192)


class AppleSignInRequest(_AuthRequest):
    id_token: Optional[str] = Field(default=None, max_length=8192)
    code: Optional[str] = Field(default=None, max_length=1024)
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)
    client_id: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_apple_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @model_validator(mode="after")
    def _require_token_or_code(self):
        if not self.id_token and not self.code:
            raise ValueError("id_token or code is required")
        return self
