from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from latchkey.storage.models import User

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

# Compiled once at import and shared by every request
_HAS_UPPER = re.compile(r"[A-Z]")
_HAS_LOWER = re.compile(r"[a-z]")
_HAS_DIGIT = re.compile(r"[0-9]")
_HAS_WHITESPACE = re.compile(r"\s")
_HAS_SPECIAL = re.compile(r"^.*?[@$!%*?&].*$", re.DOTALL)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_COMPLEXITY_MESSAGE = (
    "Must Contain At Least One Upper Case, Lower Case and Number. Dont use spaces."
)
_SPECIAL_MESSAGE = "Must Contain At Least One Special Character"


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


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


def validate_password_strength(value: str) -> str:
    """Upper, lower, digit, no whitespace, and one of ``@$!%*?&``."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if (
        not _HAS_UPPER.search(value)
        or not _HAS_LOWER.search(value)
        or not _HAS_DIGIT.search(value)
        or _HAS_WHITESPACE.search(value)
    ):
        raise ValueError(_COMPLEXITY_MESSAGE)
    if not _HAS_SPECIAL.match(value):
        raise ValueError(_SPECIAL_MESSAGE)
    return value


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not value:
            raise ValueError("Can not be empty")
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    remember: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _non_empty_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Can not be empty")
        return value


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class UserResponse(BaseModel):
    """Public view of a user; serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    username: str
    email: str
    email_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            email_verified=user.email_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class DataEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: Any
    api_version: Optional[str] = Field(default=None, alias="apiVersion")

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FieldErrorBody(BaseModel):
    message: str
    domain: Optional[str] = None


class ErrorBody(BaseModel):
    message: str
    errors: Optional[List[FieldErrorBody]] = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody
