from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "access_token_expired",
    "forbidden",
    "email_not_verified",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error half of the response envelope; ``code`` is one of a fixed set."""

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
    """Wrapper shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    # Strip zero-width and bidi override characters used for look-alike names
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {
        chr(c) for c in range(0x2066, 0x206A)
    }
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
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


_USERNAME_PATTERN = re.compile(r"^[a-z0-9_.]+$")


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(normalized) > 30:
        raise ValueError("username must be at most 30 characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError("username may contain only letters, digits, '_' and '.'")
    return normalized


def _validate_name(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if len(normalized) < 3:
        raise ValueError("name must be at least 3 characters")
    if len(normalized) > 50:
        raise ValueError("name must be at most 50 characters")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class SignupRequest(BaseModel):
    name: str
    username: str
    email: str
    password: str
    password_confirm: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class VerifyTwoFactorRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    username: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=160)
    profile_picture: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value) if value is not None else None


class RoleUpdateRequest(BaseModel):
    role: Literal["user", "admin"]


class PostCreateRequest(BaseModel):
    header: str = Field(..., max_length=2200)
    images: List[str] = Field(..., max_length=10)


class PostUpdateRequest(BaseModel):
    header: Optional[str] = Field(default=None, max_length=2200)
    images: Optional[List[str]] = Field(default=None, max_length=10)


class CommentRequest(BaseModel):
    content: str = Field(..., max_length=1024)


class AuthUserResponse(BaseModel):
    """The caller's own account, as returned by auth and ``/users/me`` routes."""

    id: str
    name: str
    username: str
    email: str
    role: str
    bio: str = ""
    profile_picture: str = ""
    is_email_verified: bool
    is_two_factor_enabled: bool
    followers_count: int = 0
    following_count: int = 0
    created_at: datetime


class UserResponse(BaseModel):
    id: str
    name: str
    username: str
    bio: str = ""
    profile_picture: str = ""
    followers_count: int = 0
    following_count: int = 0
    created_at: datetime


class SignupResponse(BaseModel):
    user: AuthUserResponse
    verification_email_sent: bool


class LoginResponse(BaseModel):
    status: Literal["authenticated", "2fa_required"]
    user_id: str
    user: Optional[AuthUserResponse] = None


class PostResponse(BaseModel):
    id: str
    author_id: str
    header: str
    images: List[str]
    likes_count: int
    liked_by_me: bool = False
    created_at: datetime
    updated_at: datetime


class CommentResponse(BaseModel):
    id: str
    post_id: str
    author_id: str
    content: str
    parent_comment_id: Optional[str] = None
    likes_count: int
    liked_by_me: bool = False
    created_at: datetime
    updated_at: datetime
