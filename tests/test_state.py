import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from devstate.core.errors import ConcurrencyError, NotFoundError, ValidationError
from devstate.crypto.hashing import state_checksum
from devstate.engine import DevStateEngine


def test_get_before_seed_raises(settings):
    with DevStateEngine.open(settings) as eng:
        with pytest.raises(NotFoundError):
            eng.get_state()


def test_seed_is_idempotent(engine):
    first = engine.get_state()
    again = engine.seed_state({"project": "ignored"})
    assert again == first
    assert again.json == {}


def test_seed_writes_no_history(engine):
    assert engine.ledger.count() == 0


def test_checksum_tracks_content(engine):
    doc = engine.update_state({"project": "devstate", "phase": "plan"})
    assert doc.checksum == state_checksum({"project": "devstate", "phase": "plan"})
    assert engine.get_state().checksum == doc.checksum


def test_nested_object_is_replaced(engine):
    engine.update_state({"a": {"x": 1, "y": 2}})
    doc = engine.update_state({"a": {"x": 1}})
    assert doc.json == {"a": {"x": 1}}


def test_update_keeps_untouched_keys(engine):
    engine.update_state({"project": "devstate"})
    doc = engine.update_state({"phase": "build"})
    assert doc.json == {"project": "devstate", "phase": "build"}


def test_validation_failure_is_atomic(engine):
    engine.update_state({"project": "devstate"})
    before = engine.get_state()
    entries_before = engine.ledger.count()

    with pytest.raises(ValidationError) as exc_info:
        engine.update_state({"bad_field": "x"})

    assert exc_info.value.errors
    assert engine.get_state().checksum == before.checksum
    assert engine.ledger.count() == entries_before


def test_non_mapping_patch_rejected(engine):
    with pytest.raises(ValidationError):
        engine.update_state(["not", "a", "mapping"])


def test_concurrent_updates_lose_nothing(engine):
    patches = [{"a": 1}, {"b": 2}, {"c": 3}, {"d": 4}, {"e": 5}, {"f": 6}]

    with ThreadPoolExecutor(max_workers=len(patches)) as pool:
        list(pool.map(lambda p: engine.update_state(p, actor="agent:worker"), patches))

    state = engine.get_state().json
    assert state == {"a": 1, "b": 2, "c": 3, "d": 4, "e": 5, "f": 6}
    assert engine.ledger.count() == len(patches)
    assert engine.verify().ok

    # last entry describes the final document
    assert engine.ledger.entries()[-1].state_checksum == engine.get_state().checksum


def test_contention_timeout_leaves_everything_unchanged(settings):
    with DevStateEngine.open(settings.with_overrides(lock_timeout=0.2)) as eng:
        eng.seed_state({"project": "devstate"})
        before = eng.get_state()

        blocker = sqlite3.connect(settings.db_path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(ConcurrencyError):
                eng.update_state({"phase": "ship"})
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert eng.get_state() == before
        assert eng.ledger.count() == 0
