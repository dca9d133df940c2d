# devstate/crypto/hashing.py
import hashlib
import hmac as _hmac
from typing import Any

from devstate.core.canon import canonical_json
from devstate.core.types import HistoryEntry


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def state_checksum(document: Any) -> str:
    """Content hash of the canonical serialization of a state document."""
    return "sha256:" + sha256_hex(canonical_json(document))


def hmac_hex(secret: str, message: bytes) -> str:
    return _hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def entry_digest(secret: str, entry: HistoryEntry) -> str:
    """
    HMAC-SHA256 over the canonical form of the signed fields:
    {actor, action, cp_from, cp_to, state_checksum, metadata, ts}.
    Chain linkage (hmac_prev) is a separate stored field, checked by the verifier.
    """
    return hmac_hex(secret, canonical_json(entry.signed_fields()))


def digests_equal(a: str, b: str) -> bool:
    return _hmac.compare_digest(a or "", b or "")


def key_fingerprint(secret: str) -> str:
    """Stable key id for a bootstrap secret, so two stores sharing a secret agree on it."""
    return "k-" + sha256_hex(secret.encode("utf-8"))[:16]
