import sqlite3
from pathlib import Path

import pytest

from devstate.core.errors import ConcurrencyError
from devstate.core.types import HistoryEntry, StateDocument
from devstate.storage import SQLiteStorage, create_storage


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def storage(temp_db_path: Path):
    s = SQLiteStorage(db_path=temp_db_path, lock_timeout=0.2)
    yield s
    s.close()


def _entry(actor: str = "agent:test", prev=None, mac="aa") -> HistoryEntry:
    return HistoryEntry(
        id=0,
        ts="2026-02-13T12:00:00.000+00:00",
        actor=actor,
        action="note",
        hmac_prev=prev,
        hmac=mac,
        metadata={"n": 1},
    )


def test_create_storage_dynamic_routing(temp_db_path: Path):
    storage = create_storage(f"sqlite://{temp_db_path}")
    assert isinstance(storage, SQLiteStorage)
    assert str(storage.db_path) == str(temp_db_path.resolve())
    storage.close()


def test_create_storage_rejects_unknown_scheme():
    with pytest.raises(ValueError, match="Unsupported"):
        create_storage("postgres://nope")


def test_sqlite_schema_creation(storage: SQLiteStorage):
    cursor = storage.conn.execute("PRAGMA table_info(history_entries)")
    columns = {row[1] for row in cursor.fetchall()}
    assert columns == {
        "id", "ts", "actor", "action", "cp_from", "cp_to", "state_checksum",
        "hmac_prev", "hmac", "metadata", "key_id",
    }
    tables = {
        row[0] for row in storage.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {"state_current", "history_entries", "hmac_keys", "devstate_locks", "ledger_meta"} <= tables


def test_insert_assigns_increasing_ids(storage: SQLiteStorage):
    first = storage.insert_entry(_entry(mac="a1"))
    second = storage.insert_entry(_entry(prev="a1", mac="a2"))
    assert (first.id, second.id) == (1, 2)
    assert storage.tail_hmac() == "a2"
    assert [e.id for e in storage.load_entries()] == [1, 2]
    assert [e.id for e in storage.load_entries(limit=1)] == [2]


def test_rollback_discards_everything(storage: SQLiteStorage):
    with pytest.raises(RuntimeError):
        with storage.transaction():
            storage.save_state(StateDocument(json={"a": 1}, checksum="sha256:x", updated_at="now"))
            storage.insert_entry(_entry())
            raise RuntimeError("boom")

    assert storage.load_state() is None
    assert storage.count_entries() == 0


def test_nested_transaction_joins_outer(storage: SQLiteStorage):
    with pytest.raises(RuntimeError):
        with storage.transaction():
            with storage.transaction():
                storage.insert_entry(_entry())
            assert storage.in_transaction
            raise RuntimeError("outer fails after inner finished")

    assert storage.count_entries() == 0


def test_read_transaction_cannot_be_upgraded(storage: SQLiteStorage):
    with pytest.raises(RuntimeError, match="upgrade"):
        with storage.transaction(exclusive=False):
            with storage.transaction():
                pass


def test_write_hold_timeout_raises_concurrency_error(storage: SQLiteStorage, temp_db_path: Path):
    blocker = sqlite3.connect(temp_db_path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(ConcurrencyError):
            with storage.transaction():
                storage.insert_entry(_entry())
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert storage.count_entries() == 0


def test_clear_entries_restarts_sequence(storage: SQLiteStorage):
    storage.insert_entry(_entry(mac="a1"))
    storage.insert_entry(_entry(mac="a2"))
    storage.clear_entries()
    assert storage.insert_entry(_entry(mac="b1")).id == 1


def test_meta_roundtrip(storage: SQLiteStorage):
    assert storage.get_meta("archive_anchor") is None
    storage.set_meta("archive_anchor", "abc")
    assert storage.get_meta("archive_anchor") == "abc"
    storage.set_meta("archive_anchor", None)
    assert storage.get_meta("archive_anchor") is None


def test_close_releases_resources(temp_db_path: Path):
    storage = SQLiteStorage(temp_db_path)
    storage.insert_entry(_entry())
    storage.close()

    with pytest.raises(RuntimeError, match="closed"):
        storage.insert_entry(_entry())


def test_context_manager(temp_db_path: Path):
    with SQLiteStorage(temp_db_path) as storage:
        assert storage.count_entries() == 0
    with pytest.raises(RuntimeError, match="closed"):
        storage.load_entries()
