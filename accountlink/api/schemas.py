from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from accountlink.service.results import AuthResult
from accountlink.storage.models import PROFILE_FIELDS

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 72

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "invalid_code",
    "conflict",
    "server_error",
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
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
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


def _validate_password_length(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: str
    password: str
    phone_country_code: Optional[str] = Field(default=None, max_length=8)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    address_line1: Optional[str] = Field(default=None, max_length=256)
    city: Optional[str] = Field(default=None, max_length=128)
    state: Optional[str] = Field(default=None, max_length=128)
    zip_code: Optional[str] = Field(default=None, max_length=16)
    country: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        return value

    def profile(self) -> dict[str, str]:
        return {
            f: getattr(self, f) for f in PROFILE_FIELDS if getattr(self, f) is not None
        }


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class SetPasswordRequest(BaseModel):
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class OAuthCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=512)


class AccountSummaryResponse(BaseModel):
    id: str
    email: str
    name: str
    origin: str
    password_set: bool


class AuthResponse(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    must_link: bool = False
    user: AccountSummaryResponse

    @model_validator(mode="after")
    def _tokens_travel_together(self):
        if bool(self.access_token) != bool(self.refresh_token):
            raise ValueError("access and refresh tokens must be issued together")
        return self

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls.model_validate(result.to_dict())


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
