from __future__ import annotations

import re
import unicodedata
from typing import Optional

from accountcore.config import Settings
from accountcore.service.errors import ValidationError

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 254

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def normalize_identifier(value: Optional[str]) -> str:
    """Stripped NFKC form, the shape usernames are stored and looked up in."""
    return unicodedata.normalize("NFKC", (value or "").strip()).strip()


def clean_username(value: Optional[str]) -> str:
    username = normalize_identifier(value)
    if not username:
        raise ValidationError("username is required", detail={"field": "username"})
    if len(username) < USERNAME_MIN_LENGTH:
        raise ValidationError(
            f"username must be at least {USERNAME_MIN_LENGTH} characters",
            detail={"field": "username"},
        )
    if len(username) > USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"username must be at most {USERNAME_MAX_LENGTH} characters",
            detail={"field": "username"},
        )
    return username


def clean_email(value: Optional[str]) -> Optional[str]:
    """Normalize an optional address; blank means "no email"."""
    if value is None or not value.strip():
        return None
    email = value.strip().lower()
    if len(email) > EMAIL_MAX_LENGTH or not _EMAIL_PATTERN.match(email):
        raise ValidationError("email address is invalid", detail={"field": "email"})
    return email


def check_password(value: Optional[str], settings: Settings, *, field: str = "password") -> str:
    if not value:
        raise ValidationError(f"{field} is required", detail={"field": field})
    if len(value) < settings.password_min_length:
        raise ValidationError(
            f"{field} must be at least {settings.password_min_length} characters",
            detail={"field": field},
        )
    if len(value) > settings.password_max_length:
        raise ValidationError(
            f"{field} must be at most {settings.password_max_length} characters",
            detail={"field": field},
        )
    return value


__all__ = ["check_password", "clean_email", "clean_username", "normalize_identifier"]
