"""Pure transitions over :class:`Account` records.

Each function takes a record (plus the instant captured for the current
transition) and returns a new record, and where a token is minted, the
token value. Nothing here touches storage or the clock.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from accountcore.config import Settings
from accountcore.service.tokens import generate_opaque_token
from accountcore.storage.models import Account, TokenKind, TokenPair, token_slot


class TokenState(str, Enum):
    ABSENT = "absent"
    LIVE = "live"
    EXPIRED = "expired"


def issue_token(
    account: Account, kind: TokenKind, ttl: timedelta, now: datetime
) -> tuple[Account, str]:
    """Overwrite the ``kind`` slot with a fresh pair; any previous token stops validating."""
    value = generate_opaque_token(kind)
    pair = TokenPair(value=value, expires_at=now + ttl)
    return replace(account, **{token_slot(kind): pair}), value


def clear_token(account: Account, kind: TokenKind) -> Account:
    return replace(account, **{token_slot(kind): None})


def token_state(account: Account, kind: TokenKind, value: str, now: datetime) -> TokenState:
    pair = account.token(kind)
    if pair is None or pair.value != value:
        return TokenState.ABSENT
    if pair.is_live(now):
        return TokenState.LIVE
    return TokenState.EXPIRED


def issue_verification(
    account: Account, settings: Settings, now: datetime
) -> tuple[Account, str]:
    return issue_token(account, TokenKind.VERIFICATION, settings.verification_ttl, now)


def issue_password_reset(
    account: Account, settings: Settings, now: datetime
) -> tuple[Account, str]:
    return issue_token(account, TokenKind.PASSWORD_RESET, settings.reset_ttl, now)


def rotate_refresh(
    account: Account, settings: Settings, now: datetime
) -> tuple[Account, str]:
    """Replace the refresh pair; the old token is gone in the same record."""
    return issue_token(account, TokenKind.REFRESH, settings.refresh_ttl, now)


def mark_email_verified(account: Account) -> Account:
    return replace(account, email_verified=True, verification=None)


def set_password_hash(account: Account, digest: str) -> Account:
    # An outstanding reset link must not outlive the password it was meant to replace
    return replace(account, password_hash=digest, password_reset=None)


def change_email(account: Account, email: Optional[str]) -> Account:
    """Point the account at a new address (or none); verification starts over."""
    return replace(account, email=email, email_verified=False, verification=None)


def _utc_date(value: datetime):
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def next_streak(current: int, last_login: Optional[datetime], now: datetime) -> int:
    """Streak after a successful login at ``now``.

    Consecutive calendar days (UTC) extend the streak, a gap restarts it at
    one, and a second login on the same day leaves it as it was.
    """
    if last_login is None:
        return 1
    days = (_utc_date(now) - _utc_date(last_login)).days
    if days == 1:
        return current + 1
    if days > 1:
        return 1
    # Same day, or last_login ahead of now after a clock change
    return current


def record_login(account: Account, now: datetime) -> Account:
    return replace(
        account,
        streak_days=next_streak(account.streak_days, account.last_login, now),
        last_login=now,
    )


__all__ = [
    "TokenState",
    "change_email",
    "clear_token",
    "issue_password_reset",
    "issue_token",
    "issue_verification",
    "mark_email_verified",
    "next_streak",
    "record_login",
    "rotate_refresh",
    "set_password_hash",
    "token_state",
]
