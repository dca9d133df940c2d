import logging
from typing import Dict, Iterable, Optional

from devstate.core.types import (
    DIGEST_MISMATCH,
    LINK_MISMATCH,
    HistoryEntry,
    VerificationResult,
)
from devstate.crypto.hashing import digests_equal, entry_digest
from devstate.crypto.keys import KeyManager
from devstate.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


def verify_chain(
    chain: Iterable[HistoryEntry],
    keyring: Dict[str, str],
    active_secret: str,
    anchor: Optional[str] = None,
) -> VerificationResult:
    """
    Prefix verification over an ordered chain. Stops at the first break.

    For each entry, in order:
      1. hmac_prev must equal the previous entry's stored hmac (`anchor` for the first)
      2. the recomputed HMAC must equal the stored hmac

    keyring maps key id → secret; entries without a key id use `active_secret`.
    """
    expected_prev = anchor
    checked = 0
    for entry in chain:
        if (entry.hmac_prev or None) != (expected_prev or None):
            return VerificationResult(False, entry.id, LINK_MISMATCH, checked)

        secret = active_secret if entry.key_id is None else keyring.get(entry.key_id)
        if secret is None or not digests_equal(entry_digest(secret, entry), entry.hmac):
            return VerificationResult(False, entry.id, DIGEST_MISMATCH, checked)

        expected_prev = entry.hmac
        checked += 1

    return VerificationResult(True, checked=checked)


class ChainVerifier:
    """
    Recomputes and checks the live ledger's hash chain.
    Read-only: runs in a snapshot and never blocks writers.
    """

    def __init__(self, storage: SQLiteStorage, keys: KeyManager):
        self.storage = storage
        self.keys = keys

    def verify(self, limit: int = 0) -> VerificationResult:
        """
        Scan all entries (or the last `limit`) in ascending id order.
        Entries appended after the snapshot starts are simply not seen.
        """
        with self.storage.transaction(exclusive=False):
            chain = self.storage.load_entries(limit)
            anchor = self.storage.previous_hmac(chain[0].id) if chain else None
            keyring = self.keys.secrets()
            active_secret = self.keys.active().secret

        result = verify_chain(chain, keyring, active_secret, anchor)
        if not result.ok:
            logger.warning("Chain verification failed at entry %s: %s", result.position, result.reason)
        return result
