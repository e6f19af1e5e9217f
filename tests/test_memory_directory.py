import json
from dataclasses import replace
from datetime import timedelta

import pytest

from accountcore.storage.errors import ConcurrentUpdate, ConstraintViolation, StorageError
from accountcore.storage.memory import MemoryDirectory
from accountcore.storage.models import Account, TokenKind, TokenPair
from conftest import START


def _account(username="alice", email="alice@x.io", **kwargs):
    return replace(Account.new(username, "digest", email, created_at=START), **kwargs)


class TestUniqueness:
    def test_create_assigns_first_version(self):
        directory = MemoryDirectory()
        stored = directory.create(_account())
        assert stored.version == 1
        assert directory.find_by_id(stored.id) == stored

    def test_duplicate_username(self):
        directory = MemoryDirectory()
        directory.create(_account())
        with pytest.raises(ConstraintViolation) as excinfo:
            directory.create(_account(email="other@x.io"))
        assert excinfo.value.field == "username"

    def test_duplicate_email(self):
        directory = MemoryDirectory()
        directory.create(_account())
        with pytest.raises(ConstraintViolation) as excinfo:
            directory.create(_account(username="bob"))
        assert excinfo.value.field == "email"

    def test_many_accounts_without_email(self):
        directory = MemoryDirectory()
        directory.create(_account(username="alice", email=None))
        directory.create(_account(username="bob", email=None))
        assert len(directory.list_accounts()) == 2

    def test_save_checks_uniqueness(self):
        directory = MemoryDirectory()
        directory.create(_account())
        bob = directory.create(_account(username="bob", email="bob@x.io"))
        with pytest.raises(ConstraintViolation):
            directory.save(replace(bob, email="alice@x.io"))


class TestCompareAndSwap:
    def test_save_bumps_version(self):
        directory = MemoryDirectory()
        stored = directory.create(_account())
        saved = directory.save(replace(stored, streak_days=3))
        assert saved.version == 2
        assert directory.find_by_id(stored.id).streak_days == 3

    def test_stale_write_rejected(self):
        directory = MemoryDirectory()
        stored = directory.create(_account())
        directory.save(replace(stored, streak_days=1))
        with pytest.raises(ConcurrentUpdate):
            directory.save(replace(stored, streak_days=2))
        assert directory.find_by_id(stored.id).streak_days == 1

    def test_save_of_deleted_account_rejected(self):
        directory = MemoryDirectory()
        stored = directory.create(_account())
        assert directory.delete(stored.id) is True
        assert directory.delete(stored.id) is False
        with pytest.raises(ConcurrentUpdate):
            directory.save(stored)

    def test_versioned_delete(self):
        directory = MemoryDirectory()
        stored = directory.create(_account())
        directory.save(replace(stored, streak_days=1))
        with pytest.raises(ConcurrentUpdate):
            directory.delete(stored.id, expected_version=stored.version)
        assert directory.delete(stored.id, expected_version=stored.version + 1) is True


class TestReplacement:
    def test_create_replaces_stale_owner(self):
        directory = MemoryDirectory()
        stale = directory.create(_account(username="old"))
        fresh = directory.create(_account(username="new"), replacing=stale)

        assert directory.find_by_id(stale.id) is None
        assert directory.find_by_email("alice@x.io").id == fresh.id

    def test_changed_owner_is_not_replaced(self):
        directory = MemoryDirectory()
        stale = directory.create(_account(username="old"))
        directory.save(replace(stale, email_verified=True))

        with pytest.raises(ConcurrentUpdate):
            directory.create(_account(username="new"), replacing=stale)
        assert directory.find_by_username("old").email_verified is True
        assert directory.find_by_username("new") is None

    def test_failed_insert_keeps_owner(self):
        directory = MemoryDirectory()
        stale = directory.create(_account(username="old"))
        directory.create(_account(username="new", email=None))

        with pytest.raises(ConstraintViolation):
            directory.create(_account(username="new"), replacing=stale)
        assert directory.find_by_id(stale.id) is not None

    def test_save_replaces_stale_owner(self):
        directory = MemoryDirectory()
        stale = directory.create(_account(username="old"))
        bob = directory.create(_account(username="bob", email=None))

        saved = directory.save(replace(bob, email="alice@x.io"), replacing=stale)
        assert saved.version == 2
        assert directory.find_by_id(stale.id) is None
        assert directory.find_by_email("alice@x.io").username == "bob"


class TestLookups:
    def test_find_by_token_is_exact(self):
        directory = MemoryDirectory()
        pair = TokenPair(value="abc123", expires_at=START + timedelta(hours=1))
        stored = directory.create(_account(refresh=pair))

        assert directory.find_by_token(TokenKind.REFRESH, "abc123").id == stored.id
        assert directory.find_by_token(TokenKind.REFRESH, "abc12") is None
        assert directory.find_by_token(TokenKind.VERIFICATION, "abc123") is None

    def test_list_is_newest_first_and_limited(self):
        directory = MemoryDirectory()
        for offset, name in enumerate(["alice", "bob", "carol"]):
            directory.create(
                _account(username=name, email=None, created_at=START + timedelta(minutes=offset))
            )
        listed = directory.list_accounts(limit=2)
        assert [a.username for a in listed] == ["carol", "bob"]


class TestSnapshots:
    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        directory = MemoryDirectory(state_path=str(path))
        pair = TokenPair(value="tok", expires_at=START + timedelta(days=1))
        stored = directory.create(_account(verification=pair))

        reloaded = MemoryDirectory(state_path=str(path))
        assert reloaded.find_by_id(stored.id) == stored
        assert reloaded.find_by_token(TokenKind.VERIFICATION, "tok").id == stored.id

    def test_half_present_pair_is_corrupt(self, tmp_path):
        path = tmp_path / "state.json"
        directory = MemoryDirectory(state_path=str(path))
        stored = directory.create(_account())

        data = json.loads(path.read_text())
        data["accounts"][0]["refresh"] = {"value": "orphan", "expires_at": None}
        path.write_text(json.dumps(data))

        with pytest.raises(StorageError) as excinfo:
            MemoryDirectory(state_path=str(path))
        assert excinfo.value.detail["account_id"] == stored.id

    def test_unreadable_snapshot(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StorageError):
            MemoryDirectory(state_path=str(path))

    def test_failed_write_rolls_memory_back(self, tmp_path, monkeypatch):
        path = tmp_path / "state.json"
        directory = MemoryDirectory(state_path=str(path))
        stored = directory.create(_account())

        def unwritable():
            raise StorageError("failed to persist directory snapshot")

        monkeypatch.setattr(directory, "_persist_state", unwritable)
        with pytest.raises(StorageError):
            directory.create(_account(username="bob", email="bob@x.io"))
        with pytest.raises(StorageError):
            directory.save(replace(stored, streak_days=5))
        with pytest.raises(StorageError):
            directory.delete(stored.id)

        assert directory.find_by_username("bob") is None
        assert directory.find_by_id(stored.id) == stored
