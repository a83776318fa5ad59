"""
API request and response models for the authguard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (emailVerified, personalInfo, retryAfter). Models
accept either spelling on input (populate_by_name) and must be dumped with
by_alias=True.

Request bodies arrive already sanitized by api/pipeline.SanitizeStage and are
validated here with parse_body(), which turns pydantic's error list into the
ValidationError envelope: {"error": "Validation failed", "details": [...]}.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.errors import ValidationError
from core.sanitizer import sanitize_email


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


M = TypeVar("M", bound=BaseModel)


def parse_body(model: type[M], body: dict[str, Any]) -> M:
    """Validate a sanitized body dict; raise ValidationError with field details."""
    try:
        return model.model_validate(body)
    except pydantic.ValidationError as exc:
        details = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err["loc"]) or "body"
            message = err["msg"].removeprefix("Value error, ")
            details.append({"field": field, "message": message})
        raise ValidationError("Validation failed", details=details) from None


def _checked_email(value: str) -> str:
    email = sanitize_email(value)
    if email is None or "." not in email.rpartition("@")[2]:
        raise ValueError("Invalid email format")
    return email


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(WireModel):
    """Request body for POST /auth/signup.

    Password composition: at least 8 characters with a lowercase letter, an
    uppercase letter and a digit. The password strength endpoint gives richer
    feedback; this is the hard floor.
    """

    email: str
    password: str = Field(max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _checked_email(value)

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        problems = []
        if len(value) < 8:
            problems.append("Password must be at least 8 characters long")
        if not re.search(r"[a-z]", value):
            problems.append("Password must contain at least one lowercase letter")
        if not re.search(r"[A-Z]", value):
            problems.append("Password must contain at least one uppercase letter")
        if not re.search(r"\d", value):
            problems.append("Password must contain at least one number")
        if problems:
            raise ValueError("; ".join(problems))
        return value

    @field_validator("name")
    @classmethod
    def blank_name_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class LoginRequest(WireModel):
    email: str
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _checked_email(value)


class ResendVerificationRequest(WireModel):
    """Request body for POST /auth/verify-email."""

    email: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _checked_email(value)


class PasswordStrengthRequest(WireModel):
    password: str = Field(max_length=256)
    personal_info: list[str] = Field(default_factory=list, max_length=20)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserView(WireModel):
    """Public projection of a user record. Never carries the hash or tokens."""

    id: str
    email: str
    name: Optional[str] = None
    email_verified: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class MessageResponse(WireModel):
    success: bool = True
    message: str


class SignupData(WireModel):
    email: str
    name: Optional[str] = None
    email_verified: bool = False
    email_sent: bool


class SignupResponse(WireModel):
    success: bool = True
    message: str
    data: SignupData


class LoginResponse(WireModel):
    """Body of a successful login. `token` mirrors the access cookie for API clients."""

    success: bool = True
    message: str = "Login successful"
    user: UserView
    token: str


class MeResponse(WireModel):
    success: bool = True
    user: UserView


class PasswordStrengthData(WireModel):
    score: int
    strength: str
    entropy: float
    is_valid: bool
    feedback: list[str]
    suggestions: list[str]
    estimated_crack_time: str


class PasswordStrengthResponse(WireModel):
    success: bool = True
    data: PasswordStrengthData


class ComponentHealth(WireModel):
    app: str = "ok"
    database: str


class HealthResponse(WireModel):
    success: bool
    status: str
    version: str
    components: ComponentHealth
