from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    """Opaque, storage-backed token slots on an account."""

    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    """An outstanding opaque token and the instant it stops being accepted."""

    value: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class Account:
    id: str
    username: str
    password_hash: str
    email: Optional[str] = None
    email_verified: bool = False
    verification: Optional[TokenPair] = None
    password_reset: Optional[TokenPair] = None
    refresh: Optional[TokenPair] = None
    last_login: Optional[datetime] = None
    streak_days: int = 0
    is_premium: bool = False
    is_guest: bool = False
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def new(
        cls,
        username: str,
        password_hash: str,
        email: Optional[str] = None,
        *,
        created_at: Optional[datetime] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            email=email,
            created_at=created_at or utcnow(),
        )

    def token(self, kind: TokenKind) -> Optional[TokenPair]:
        return getattr(self, _SLOT_FOR_KIND[kind])


_SLOT_FOR_KIND = {
    TokenKind.VERIFICATION: "verification",
    TokenKind.PASSWORD_RESET: "password_reset",
    TokenKind.REFRESH: "refresh",
}


def token_slot(kind: TokenKind) -> str:
    """Attribute name on :class:`Account` holding the pair for ``kind``."""
    return _SLOT_FOR_KIND[kind]


@dataclass(frozen=True)
class PublicAccount:
    """Caller-safe projection of an account; carries no credential material."""

    id: str
    username: str
    email: Optional[str]
    email_verified: bool
    is_premium: bool
    is_guest: bool
    created_at: datetime
    last_login: Optional[datetime]
    streak_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "email_verified": self.email_verified,
            "is_premium": self.is_premium,
            "is_guest": self.is_guest,
            "created_at": self.created_at.isoformat(),
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "streak_days": self.streak_days,
        }


def public_view(account: Account) -> PublicAccount:
    return PublicAccount(
        id=account.id,
        username=account.username,
        email=account.email,
        email_verified=account.email_verified,
        is_premium=account.is_premium,
        is_guest=account.is_guest,
        created_at=account.created_at,
        last_login=account.last_login,
        streak_days=account.streak_days,
    )


def admin_view(account: Account) -> Dict[str, Any]:
    """Public view plus which token pairs are outstanding and until when.

    Token values are never included.
    """
    view = public_view(account).to_dict()
    for kind in TokenKind:
        pair = account.token(kind)
        view[f"{kind.value}_expires_at"] = pair.expires_at.isoformat() if pair else None
    return view
