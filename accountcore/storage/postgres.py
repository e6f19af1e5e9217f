from __future__ import annotations

import contextlib
import uuid
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from accountcore.logging import get_logger
from accountcore.storage.directory import pair_from_columns
from accountcore.storage.errors import ConcurrentUpdate, ConstraintViolation, StorageError
from accountcore.storage.models import Account, TokenKind

# kind -> (token column, expiry column)
_TOKEN_COLUMNS = {
    TokenKind.VERIFICATION: ("verification_token", "verification_token_expires_at"),
    TokenKind.PASSWORD_RESET: ("password_reset_token", "password_reset_expires_at"),
    TokenKind.REFRESH: ("refresh_token", "refresh_token_expires_at"),
}

_CONSTRAINT_FIELDS = {
    "account_username_key": "username",
    "account_email_key": "email",
    "account_pkey": "id",
}

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        username VARCHAR(50) NOT NULL,
        email VARCHAR(254),
        password_hash TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_token TEXT,
        verification_token_expires_at TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        refresh_token TEXT,
        refresh_token_expires_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        streak_days INTEGER NOT NULL DEFAULT 0,
        is_premium BOOLEAN NOT NULL DEFAULT FALSE,
        is_guest BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        version INTEGER NOT NULL DEFAULT 1,
        CONSTRAINT account_username_key UNIQUE (username),
        CONSTRAINT account_email_key UNIQUE (email),
        CONSTRAINT account_verification_pair CHECK (
            (verification_token IS NULL) = (verification_token_expires_at IS NULL)
        ),
        CONSTRAINT account_password_reset_pair CHECK (
            (password_reset_token IS NULL) = (password_reset_expires_at IS NULL)
        ),
        CONSTRAINT account_refresh_pair CHECK (
            (refresh_token IS NULL) = (refresh_token_expires_at IS NULL)
        )
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_verification_token_idx ON account (verification_token) WHERE verification_token IS NOT NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_password_reset_token_idx ON account (password_reset_token) WHERE password_reset_token IS NOT NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_refresh_token_idx ON account (refresh_token) WHERE refresh_token IS NOT NULL",
]

_COLUMNS = (
    "id",
    "username",
    "email",
    "password_hash",
    "email_verified",
    "verification_token",
    "verification_token_expires_at",
    "password_reset_token",
    "password_reset_expires_at",
    "refresh_token",
    "refresh_token_expires_at",
    "last_login",
    "streak_days",
    "is_premium",
    "is_guest",
    "created_at",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresDirectory:
    """Postgres-backed account directory.

    Uniqueness of username and email is enforced by table constraints;
    ``save`` is a compare-and-swap on the ``version`` column.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Pooled connection; commits on clean exit, maps driver failures."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint or "", constraint)
            raise ConstraintViolation(
                f"{field or 'value'} already exists", {"field": field}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_directory_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageError("account directory unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _row_to_account(self, row: Dict[str, Any]) -> Account:
        account_id = str(row["id"])
        pairs = {
            kind: pair_from_columns(account_id, kind, row.get(token_col), row.get(expiry_col))
            for kind, (token_col, expiry_col) in _TOKEN_COLUMNS.items()
        }
        return Account(
            id=account_id,
            username=row["username"],
            email=row.get("email"),
            password_hash=row["password_hash"],
            email_verified=bool(row.get("email_verified", False)),
            verification=pairs[TokenKind.VERIFICATION],
            password_reset=pairs[TokenKind.PASSWORD_RESET],
            refresh=pairs[TokenKind.REFRESH],
            last_login=row.get("last_login"),
            streak_days=int(row.get("streak_days") or 0),
            is_premium=bool(row.get("is_premium", False)),
            is_guest=bool(row.get("is_guest", False)),
            created_at=row["created_at"],
            version=int(row["version"]),
        )

    def _account_params(self, account: Account) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "email_verified": account.email_verified,
            "last_login": account.last_login,
            "streak_days": account.streak_days,
            "is_premium": account.is_premium,
            "is_guest": account.is_guest,
            "created_at": account.created_at,
        }
        for kind, (token_col, expiry_col) in _TOKEN_COLUMNS.items():
            pair = account.token(kind)
            params[token_col] = pair.value if pair else None
            params[expiry_col] = pair.expires_at if pair else None
        return params

    def _fetch_one(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {where} = %s", (value,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        return self._fetch_one("id", account_id)

    def find_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_one("username", username)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one("email", email)

    def find_by_token(self, kind: TokenKind, value: str) -> Optional[Account]:
        token_col, _ = _TOKEN_COLUMNS[kind]
        return self._fetch_one(token_col, value)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def _delete_replaced(self, conn: psycopg.Connection, replacing: Optional[Account]) -> None:
        if replacing is None:
            return
        result = conn.execute(
            "DELETE FROM account WHERE id = %s AND version = %s",
            (replacing.id, replacing.version),
        )
        if result.rowcount == 0:
            raise ConcurrentUpdate(replacing.id, replacing.version)

    def create(self, account: Account, *, replacing: Optional[Account] = None) -> Account:
        params = self._account_params(account)
        columns = ", ".join(_COLUMNS)
        placeholders = ", ".join(f"%({col})s" for col in _COLUMNS)
        with self._connect() as conn, conn.transaction():
            self._delete_replaced(conn, replacing)
            row = conn.execute(
                f"INSERT INTO account ({columns}, version) VALUES ({placeholders}, 1) RETURNING version",
                params,
            ).fetchone()
        return replace(account, version=int(row["version"]))

    def save(self, account: Account, *, replacing: Optional[Account] = None) -> Account:
        params = self._account_params(account)
        params["expected_version"] = account.version
        assignments = ", ".join(f"{col} = %({col})s" for col in _COLUMNS if col != "id")
        with self._connect() as conn, conn.transaction():
            self._delete_replaced(conn, replacing)
            row = conn.execute(
                f"""
                UPDATE account
                SET {assignments}, version = version + 1
                WHERE id = %(id)s AND version = %(expected_version)s
                RETURNING version
                """,
                params,
            ).fetchone()
            if not row:
                # Rolls back the replaced-record delete as well
                raise ConcurrentUpdate(account.id, account.version)
        return replace(account, version=int(row["version"]))

    def delete(self, account_id: str, *, expected_version: Optional[int] = None) -> bool:
        if not _is_uuid(account_id):
            return False
        with self._connect() as conn, conn.transaction():
            if expected_version is None:
                result = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
                return result.rowcount > 0
            result = conn.execute(
                "DELETE FROM account WHERE id = %s AND version = %s",
                (account_id, expected_version),
            )
            if result.rowcount > 0:
                return True
            exists = conn.execute(
                "SELECT 1 FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        if exists:
            raise ConcurrentUpdate(account_id, expected_version)
        return False

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresDirectory"]
