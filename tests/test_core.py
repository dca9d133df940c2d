import pytest

from devstate.core.canon import canonical_json, canonical_json_str, normalize
from devstate.core.errors import ChainIntegrityError, ValidationError
from devstate.core.types import HistoryEntry, HmacKey, StateDocument, to_utc_iso
from devstate.crypto.hashing import entry_digest, key_fingerprint, state_checksum
from devstate.state.store import shallow_merge


@pytest.fixture
def sample_entry():
    return HistoryEntry(
        id=1,
        ts="2026-01-31T14:00:00.000+00:00",
        actor="agent:planner",
        action="update_state",
        state_checksum="sha256:abc",
        metadata={"patch_keys": ["phase"]},
    )


def test_entry_immutable(sample_entry):
    with pytest.raises(AttributeError):
        sample_entry.id = 99


def test_entry_dict_roundtrip(sample_entry):
    d = sample_entry.to_dict()
    assert d["hmac_prev"] is None
    assert HistoryEntry.from_dict(d) == sample_entry


def test_signed_fields_exclude_links(sample_entry):
    fields = sample_entry.signed_fields()
    assert set(fields) == {"actor", "action", "cp_from", "cp_to", "state_checksum", "metadata", "ts"}


def test_canonical_json_sorting():
    messy = {
        "z": 1,
        "a": "hello",
        "nested": {"b": 2, "a": 1},
    }
    assert canonical_json_str(messy) == '{"a":"hello","nested":{"a":1,"b":2},"z":1}'


def test_canonical_json_rejects_non_json():
    with pytest.raises(ValidationError):
        canonical_json({"when": object()})


def test_normalize_matches_storage_shape():
    assert normalize({"t": (1, 2), "f": 1.0}) == {"f": 1, "t": [1, 2]}


def test_state_checksum_is_key_order_independent():
    a = state_checksum({"x": 1, "y": {"b": 2, "a": 1}})
    b = state_checksum({"y": {"a": 1, "b": 2}, "x": 1})
    assert a == b
    assert a.startswith("sha256:")


def test_entry_digest_depends_on_secret(sample_entry):
    assert entry_digest("one", sample_entry) != entry_digest("two", sample_entry)
    assert entry_digest("one", sample_entry) == entry_digest("one", sample_entry)


def test_entry_digest_ignores_link_fields(sample_entry):
    relinked = HistoryEntry(**{**sample_entry.to_dict(), "hmac_prev": "ff" * 32, "id": 7})
    assert entry_digest("s", relinked) == entry_digest("s", sample_entry)


def test_key_fingerprint_stable():
    assert key_fingerprint("abc") == key_fingerprint("abc")
    assert key_fingerprint("abc").startswith("k-")


def test_hmac_key_repr_hides_secret():
    key = HmacKey(id="k1", secret="super-secret")
    assert "super-secret" not in repr(key)


def test_shallow_merge_replaces_nested_objects():
    merged = shallow_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"x": 1}})
    assert merged == {"a": {"x": 1}, "b": 1}


def test_shallow_merge_does_not_mutate_inputs():
    current = {"a": 1}
    patch = {"b": 2}
    shallow_merge(current, patch)
    assert current == {"a": 1}
    assert patch == {"b": 2}


def test_to_utc_iso_normalizes():
    assert to_utc_iso("2026-01-31T14:00:00Z") == "2026-01-31T14:00:00.000+00:00"
    assert to_utc_iso("2026-01-31T16:00:00+02:00") == "2026-01-31T14:00:00.000+00:00"
    with pytest.raises(ValidationError):
        to_utc_iso("yesterday")


def test_error_to_dict_carries_kind():
    err = ChainIntegrityError("broken", position=4, reason="LINK_MISMATCH")
    assert err.to_dict() == {
        "error": "chain_integrity",
        "message": "broken",
        "position": 4,
        "reason": "LINK_MISMATCH",
    }


def test_state_document_from_dict():
    doc = StateDocument.from_dict({"json": {"a": 1}, "checksum": "sha256:x"})
    assert doc.updated_at == ""
    assert doc.json == {"a": 1}
