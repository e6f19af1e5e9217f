from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Stable error codes carried in the envelope
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "invalid_token",
    "expired_token",
    "server_error",
}

# Upper bounds on raw request fields; semantic limits live in the engine
MAX_TOKEN_LENGTH = 512
MAX_IDENTIFIER_LENGTH = 320
MAX_PASSWORD_FIELD_LENGTH = 1024


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(_Request):
    username: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_IDENTIFIER_LENGTH)


class LoginRequest(_Request):
    username_or_email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class EmailVerificationRequest(_Request):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class PasswordResetRequest(_Request):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)


class PasswordResetConfirm(_Request):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class TokenRefreshRequest(_Request):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class PasswordChangeRequest(_Request):
    """Change password; the current password is required."""

    current_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class ProfileUpdateRequest(_Request):
    """Omitted fields are left alone; ``email: ""`` removes the address."""

    username: Optional[str] = Field(default=None, max_length=MAX_IDENTIFIER_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_IDENTIFIER_LENGTH)


class AdminSetPasswordRequest(_Request):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
