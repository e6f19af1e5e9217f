import contextlib
import uuid
from dataclasses import replace
from datetime import timedelta

import psycopg
import pytest

from accountcore.storage.errors import ConcurrentUpdate, StorageError
from accountcore.storage.models import Account, TokenKind, TokenPair
from accountcore.storage.postgres import PostgresDirectory
from conftest import START


class StubCursor:
    def __init__(self, rows):
        self.rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class StubConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        rows = self.pool.responses.pop(0) if self.pool.responses else []
        return StubCursor(rows)

    @contextlib.contextmanager
    def transaction(self):
        try:
            yield
        except Exception:
            self.pool.transactions.append("rollback")
            raise
        self.pool.transactions.append("commit")


class StubPool:
    """Records statements and answers them from a queue of canned row lists."""

    def __init__(self):
        self.statements = []
        self.responses = []
        self.transactions = []
        self.fail_with = None
        self.closed = False

    @contextlib.contextmanager
    def connection(self):
        if self.fail_with is not None:
            raise self.fail_with
        yield StubConnection(self)

    def close(self):
        self.closed = True


def _row(account_id, **overrides):
    row = {
        "id": uuid.UUID(account_id),
        "username": "alice",
        "email": "alice@x.io",
        "password_hash": "digest",
        "email_verified": False,
        "verification_token": None,
        "verification_token_expires_at": None,
        "password_reset_token": None,
        "password_reset_expires_at": None,
        "refresh_token": None,
        "refresh_token_expires_at": None,
        "last_login": None,
        "streak_days": 0,
        "is_premium": False,
        "is_guest": False,
        "created_at": START,
        "version": 1,
    }
    row.update(overrides)
    return row


@pytest.fixture
def pool():
    return StubPool()


@pytest.fixture
def directory(pool):
    store = PostgresDirectory("postgresql://stub", pool=pool)
    pool.statements.clear()
    return store


def test_schema_created_on_init(pool):
    PostgresDirectory("postgresql://stub", pool=pool)
    sql = [statement for statement, _ in pool.statements]
    assert any("CREATE TABLE IF NOT EXISTS account" in s for s in sql)
    assert any("account_refresh_token_idx" in s for s in sql)


def test_row_mapping(directory, pool):
    account_id = str(uuid.uuid4())
    expires = START + timedelta(days=30)
    pool.responses.append(
        [_row(account_id, refresh_token="tok", refresh_token_expires_at=expires, version=4)]
    )

    account = directory.find_by_token(TokenKind.REFRESH, "tok")
    assert account.id == account_id
    assert account.refresh == TokenPair(value="tok", expires_at=expires)
    assert account.verification is None
    assert account.version == 4
    statement, params = pool.statements[0]
    assert "WHERE refresh_token = %s" in statement
    assert params == ("tok",)


def test_half_present_pair_is_storage_error(directory, pool):
    account_id = str(uuid.uuid4())
    pool.responses.append([_row(account_id, password_reset_token="orphan")])
    with pytest.raises(StorageError):
        directory.find_by_id(account_id)


def test_non_uuid_ids_skip_the_database(directory, pool):
    assert directory.find_by_id("not-a-uuid") is None
    assert directory.delete("not-a-uuid") is False
    assert pool.statements == []


def test_save_is_compare_and_swap(directory, pool):
    account = replace(Account.new("alice", "digest", created_at=START), version=3)
    pool.responses.append([{"version": 4}])

    saved = directory.save(account)
    assert saved.version == 4
    statement, params = pool.statements[0]
    assert "version = version + 1" in statement
    assert "AND version = %(expected_version)s" in statement
    assert params["expected_version"] == 3
    assert params["refresh_token"] is None and params["refresh_token_expires_at"] is None


def test_save_without_matching_row_is_concurrent_update(directory, pool):
    account = Account.new("alice", "digest", created_at=START)
    pool.responses.append([])
    with pytest.raises(ConcurrentUpdate):
        directory.save(account)


def test_create_writes_pair_columns(directory, pool):
    pair = TokenPair(value="verify", expires_at=START + timedelta(hours=24))
    account = replace(Account.new("alice", "digest", created_at=START), verification=pair)
    pool.responses.append([{"version": 1}])

    created = directory.create(account)
    assert created.version == 1
    _, params = pool.statements[0]
    assert params["verification_token"] == "verify"
    assert params["verification_token_expires_at"] == pair.expires_at


def test_driver_errors_become_storage_errors(directory, pool):
    pool.fail_with = psycopg.OperationalError("connection refused")
    with pytest.raises(StorageError):
        directory.find_by_username("alice")


def test_close_releases_pool(directory, pool):
    directory.close()
    assert pool.closed


def test_create_replacing_runs_in_one_transaction(directory, pool):
    stale = replace(Account.new("old", "digest", "alice@x.io", created_at=START), version=2)
    account = Account.new("alice", "digest", "alice@x.io", created_at=START)
    pool.responses.extend([[{}], [{"version": 1}]])

    directory.create(account, replacing=stale)
    delete, insert = [statement for statement, _ in pool.statements]
    assert delete == "DELETE FROM account WHERE id = %s AND version = %s"
    assert pool.statements[0][1] == (stale.id, 2)
    assert insert.startswith("INSERT INTO account")
    assert pool.transactions == ["commit"]


def test_changed_stale_owner_rolls_back(directory, pool):
    stale = Account.new("old", "digest", "alice@x.io", created_at=START)
    account = Account.new("alice", "digest", "alice@x.io", created_at=START)
    pool.responses.append([])

    with pytest.raises(ConcurrentUpdate):
        directory.create(account, replacing=stale)
    assert len(pool.statements) == 1
    assert pool.transactions == ["rollback"]


def test_versioned_delete(directory, pool):
    account_id = str(uuid.uuid4())
    pool.responses.extend([[], [{"?column?": 1}]])
    with pytest.raises(ConcurrentUpdate):
        directory.delete(account_id, expected_version=3)
    assert pool.statements[0][1] == (account_id, 3)

    pool.responses.extend([[], []])
    assert directory.delete(account_id, expected_version=3) is False
