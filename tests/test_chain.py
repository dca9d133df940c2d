import time

import pytest

from devstate.chain.ledger import DELETE_HISTORY
from devstate.core.errors import NotFoundError, ValidationError
from devstate.crypto.hashing import entry_digest
from conftest import TEST_SECRET


def test_ledger_starts_empty(engine):
    assert engine.ledger.count() == 0
    assert engine.ledger.tail_hmac() is None


def test_append_one_entry(engine):
    entry = engine.ledger.append(actor="agent:alice", action="checkpoint", cp_from="v1", cp_to="v2")

    chain = engine.ledger.entries()
    assert len(chain) == 1
    assert chain[0].id == entry.id == 1
    assert chain[0].hmac_prev is None
    assert chain[0].hmac == entry_digest(TEST_SECRET, chain[0])
    assert chain[0].cp_to == "v2"


def test_chain_links_hmacs(engine):
    for i in range(5):
        engine.ledger.append(actor=f"agent:{i}", action="note", metadata={"i": i})

    chain = engine.ledger.entries()
    assert [e.id for e in chain] == [1, 2, 3, 4, 5]
    assert chain[0].hmac_prev is None
    for prev, cur in zip(chain, chain[1:]):
        assert cur.hmac_prev == prev.hmac


def test_append_entry_from_mapping(engine):
    stored = engine.append_history({"actor": "http", "action": "deploy", "metadata": {"env": "staging"}})
    assert stored.metadata == {"env": "staging"}


def test_append_entry_rejects_unknown_fields(engine):
    with pytest.raises(ValidationError):
        engine.append_history({"actor": "http", "action": "deploy", "hmac": "forged"})


def test_append_requires_action(engine):
    with pytest.raises(ValidationError):
        engine.ledger.append(actor="agent:x", action="")


def test_update_writes_linked_entry(engine):
    engine.ledger.append(actor="agent:a", action="note")
    doc = engine.update_state({"project": "devstate"}, actor="agent:b")

    last = engine.ledger.entries()[-1]
    assert last.action == "update_state"
    assert last.actor == "agent:b"
    assert last.state_checksum == doc.checksum
    assert last.metadata == {"patch_keys": ["project"]}
    assert last.hmac_prev == engine.ledger.entries()[-2].hmac


def test_tombstone_preserves_history(engine):
    for i in range(5):
        engine.ledger.append(actor="agent:a", action="note", metadata={"i": i})
    before = engine.ledger.get(5)

    marker = engine.tombstone_history(5, actor="agent:janitor")

    assert engine.ledger.get(5) == before
    assert marker.action == "delete_history"
    assert marker.metadata == {"target_id": 5}
    assert marker.hmac_prev == before.hmac
    assert engine.ledger.count() == 6
    assert engine.ledger.is_tombstoned(5)
    assert not engine.ledger.is_tombstoned(4)


def test_tombstone_missing_entry(engine):
    with pytest.raises(NotFoundError):
        engine.tombstone_history(42)
    assert engine.ledger.count() == 0


def test_search_filters_newest_first(engine):
    engine.ledger.append(actor="agent:a", action="note")
    engine.ledger.append(actor="agent:b", action="note")
    engine.ledger.append(actor="agent:a", action="deploy")

    by_actor = engine.search_history(actor="agent:a")
    assert [e.id for e in by_actor] == [3, 1]

    by_both = engine.search_history(actor="agent:a", action="note")
    assert [e.id for e in by_both] == [1]


def test_search_time_window(engine):
    engine.ledger.append(actor="agent:a", action="note")
    time.sleep(0.01)
    middle = engine.ledger.append(actor="agent:a", action="note")
    time.sleep(0.01)
    engine.ledger.append(actor="agent:a", action="note")

    found = engine.search_history(since=middle.ts, until=middle.ts)
    assert [e.id for e in found] == [middle.id]
    assert engine.search_history(until="2000-01-01T00:00:00Z") == []


def test_search_can_hide_tombstoned(engine):
    engine.ledger.append(actor="agent:a", action="note")
    engine.ledger.append(actor="agent:a", action="note")
    engine.tombstone_history(1)

    visible = engine.search_history(include_tombstoned=False)
    assert [e.id for e in visible] == [3, 2]
    assert len(engine.search_history()) == 3


@pytest.mark.parametrize("fields", [
    {"cp_from": 5, "cp_to": 6},
    {"state_checksum": 1234},
    {"actor": 7},
    {"action": ["checkpoint"]},
])
def test_non_string_fields_rejected(engine, fields):
    entry = {"actor": "agent:a", "action": "checkpoint", **fields}

    with pytest.raises(ValidationError):
        engine.append_history(entry)
    assert engine.ledger.count() == 0
    assert engine.verify().ok


def test_string_checkpoints_still_verify(engine):
    engine.append_history({"actor": "agent:a", "action": "checkpoint", "cp_from": "5", "cp_to": "6"})
    assert engine.ledger.entries()[0].cp_to == "6"
    assert engine.verify().ok


@pytest.mark.parametrize("action", ["delete_history", "archive_history"])
def test_reserved_actions_rejected(engine, action):
    engine.ledger.append(actor="agent:a", action="note")

    with pytest.raises(ValidationError):
        engine.append_history({"actor": "agent:a", "action": action, "metadata": {"target_id": 1}})
    assert engine.ledger.count() == 1
    assert not engine.ledger.is_tombstoned(1)


def test_non_integer_tombstone_target_is_ignored(engine):
    engine.ledger.append(actor="agent:a", action="note")
    engine.ledger.append(actor="agent:x", action=DELETE_HISTORY, metadata={"target_id": "abc"})
    engine.ledger.append(actor="agent:x", action=DELETE_HISTORY, metadata={"target_id": 1.5})
    engine.tombstone_history(1)

    assert engine.ledger.tombstoned_ids() == {1}
    visible = engine.search_history(include_tombstoned=False)
    assert [e.id for e in visible] == [4, 3, 2]
