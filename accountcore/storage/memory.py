from __future__ import annotations

import contextlib
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from accountcore.logging import get_logger
from accountcore.storage.directory import pair_from_columns
from accountcore.storage.errors import ConcurrentUpdate, ConstraintViolation, StorageError
from accountcore.storage.models import Account, TokenKind, TokenPair


class MemoryDirectory:
    """In-process account directory, optionally snapshotted to a JSON file."""

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # lookups
    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def find_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.username == username), None
            )

    def find_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def find_by_token(self, kind: TokenKind, value: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                pair = account.token(kind)
                if pair is not None and pair.value == value:
                    return account
            return None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(
                self.accounts.values(), key=lambda a: a.created_at, reverse=True
            )
            return ordered[:limit]

    # writes
    def _check_unique(self, account: Account, *, ignore: Optional[str] = None) -> None:
        for existing in self.accounts.values():
            if existing.id in (account.id, ignore):
                continue
            if existing.username == account.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if account.email is not None and existing.email == account.email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def _check_replaceable(self, replacing: Optional[Account]) -> Optional[str]:
        if replacing is None:
            return None
        current = self.accounts.get(replacing.id)
        if current is None or current.version != replacing.version:
            raise ConcurrentUpdate(replacing.id, replacing.version)
        return replacing.id

    @contextlib.contextmanager
    def _mutation(self) -> Iterator[None]:
        """Hold the lock for one change and persist it.

        If the snapshot cannot be written the in-memory dict is put back as
        it was, so memory never runs ahead of the state file.
        """
        with self._data_lock:
            before = dict(self.accounts)
            try:
                yield
                self._persist_state()
            except StorageError:
                self.accounts = before
                raise

    def create(self, account: Account, *, replacing: Optional[Account] = None) -> Account:
        with self._mutation():
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            replaced_id = self._check_replaceable(replacing)
            self._check_unique(account, ignore=replaced_id)
            stored = replace(account, version=1)
            if replaced_id is not None:
                del self.accounts[replaced_id]
            self.accounts[stored.id] = stored
        return stored

    def save(self, account: Account, *, replacing: Optional[Account] = None) -> Account:
        with self._mutation():
            current = self.accounts.get(account.id)
            if current is None or current.version != account.version:
                raise ConcurrentUpdate(account.id, account.version)
            replaced_id = self._check_replaceable(replacing)
            self._check_unique(account, ignore=replaced_id)
            stored = replace(account, version=account.version + 1)
            if replaced_id is not None:
                del self.accounts[replaced_id]
            self.accounts[stored.id] = stored
        return stored

    def delete(self, account_id: str, *, expected_version: Optional[int] = None) -> bool:
        with self._mutation():
            current = self.accounts.get(account_id)
            if current is None:
                return False
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentUpdate(account_id, expected_version)
            del self.accounts[account_id]
        return True

    # snapshots
    def _serialize_pair(self, pair: Optional[TokenPair]) -> Dict[str, Any]:
        if pair is None:
            return {"value": None, "expires_at": None}
        return {"value": pair.value, "expires_at": self._serialize_datetime(pair.expires_at)}

    def _serialize_account(self, account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "email_verified": account.email_verified,
            "verification": self._serialize_pair(account.verification),
            "password_reset": self._serialize_pair(account.password_reset),
            "refresh": self._serialize_pair(account.refresh),
            "last_login": self._serialize_datetime(account.last_login),
            "streak_days": account.streak_days,
            "is_premium": account.is_premium,
            "is_guest": account.is_guest,
            "created_at": self._serialize_datetime(account.created_at),
            "version": account.version,
        }

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        def _pair(kind: TokenKind) -> Optional[TokenPair]:
            raw = data.get(kind.value) or {}
            return pair_from_columns(
                data["id"],
                kind,
                raw.get("value"),
                self._deserialize_datetime(raw.get("expires_at")),
            )

        return Account(
            id=data["id"],
            username=data["username"],
            email=data.get("email"),
            password_hash=data["password_hash"],
            email_verified=bool(data.get("email_verified", False)),
            verification=_pair(TokenKind.VERIFICATION),
            password_reset=_pair(TokenKind.PASSWORD_RESET),
            refresh=_pair(TokenKind.REFRESH),
            last_login=self._deserialize_datetime(data.get("last_login")),
            streak_days=int(data.get("streak_days", 0)),
            is_premium=bool(data.get("is_premium", False)),
            is_guest=bool(data.get("is_guest", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            version=int(data.get("version", 1)),
        )

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
        }
        tmp_path = self.state_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            raise StorageError(
                "failed to persist directory snapshot", {"path": str(self.state_path)}
            ) from exc

    def _load_state(self) -> bool:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(
                "failed to load directory snapshot", {"path": str(self.state_path)}
            ) from exc
        self.accounts = {
            raw["id"]: self._deserialize_account(raw) for raw in data.get("accounts", [])
        }
        self.logger.info("directory_snapshot_loaded", accounts=len(self.accounts))
        return True


__all__ = ["MemoryDirectory"]
