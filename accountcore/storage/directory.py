"""Account Directory contract shared by the memory and Postgres backends."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from accountcore.storage.errors import StorageError
from accountcore.storage.models import Account, TokenKind, TokenPair


class AccountDirectory(Protocol):
    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def find_by_username(self, username: str) -> Optional[Account]: ...

    def find_by_email(self, email: str) -> Optional[Account]: ...

    def find_by_token(self, kind: TokenKind, value: str) -> Optional[Account]: ...

    def create(self, account: Account, *, replacing: Optional[Account] = None) -> Account:
        """Insert a new record; raises ConstraintViolation on username/email clash.

        ``replacing`` is a stale record removed in the same unit of work,
        only if it is still at the version that was read (ConcurrentUpdate
        otherwise). Nothing is removed when the insert fails.
        """
        ...

    def save(self, account: Account, *, replacing: Optional[Account] = None) -> Account:
        """Write the full record if the stored version still equals
        ``account.version``; returns the record with its version bumped.

        Raises ConcurrentUpdate when another writer got there first, and
        ConstraintViolation on username/email clash. ``replacing`` works as
        in :meth:`create`.
        """
        ...

    def delete(self, account_id: str, *, expected_version: Optional[int] = None) -> bool:
        """Remove a record; False if it does not exist.

        With ``expected_version`` the record must still be at that version,
        else ConcurrentUpdate.
        """
        ...

    def list_accounts(self, limit: int = 100) -> List[Account]: ...


def pair_from_columns(
    account_id: str,
    kind: TokenKind,
    value: Optional[str],
    expires_at: Optional[datetime],
) -> Optional[TokenPair]:
    """Rebuild a token pair from its two stored columns.

    A token without an expiry (or the reverse) cannot be produced by this
    package, so finding one means the record was altered out of band.
    """
    if value is None and expires_at is None:
        return None
    if value is None or expires_at is None:
        raise StorageError(
            "token pair half present",
            {"account_id": account_id, "token_kind": kind.value},
        )
    return TokenPair(value=value, expires_at=expires_at)


__all__ = ["AccountDirectory", "pair_from_columns"]
