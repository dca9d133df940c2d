import logging
from typing import Any, Dict, List, Optional, Set

from devstate.core.canon import normalize
from devstate.core.errors import NotFoundError, ValidationError
from devstate.core.types import HistoryEntry, to_utc_iso, utc_now_iso
from devstate.crypto.hashing import entry_digest
from devstate.crypto.keys import KeyManager
from devstate.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

DELETE_HISTORY = "delete_history"
ARCHIVE_HISTORY = "archive_history"
# written only by tombstone() and the archiver
RESERVED_ACTIONS = frozenset({DELETE_HISTORY, ARCHIVE_HISTORY})
SEARCH_CAP = 1000


class HistoryLedger:
    """
    Append-only, HMAC-chained audit history.

    Each entry stores the previous entry's hmac as `hmac_prev`; the tail read
    and the insert of the next entry happen in one exclusive unit, so the
    chain cannot fork. Entries are never updated; deletion is a later
    `delete_history` entry naming its target.
    """

    def __init__(self, storage: SQLiteStorage, keys: KeyManager):
        self.storage = storage
        self.keys = keys

    def append(
        self,
        actor: str,
        action: str,
        cp_from: Optional[str] = None,
        cp_to: Optional[str] = None,
        state_checksum: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        """
        Append one entry: read tail hmac → sign → insert.
        Joins the caller's transaction when one is open (e.g. a state update).
        """
        if not isinstance(actor, str) or not isinstance(action, str) or not actor or not action:
            raise ValidationError("History entries need a string actor and action")
        # the digest covers these as given; they must survive the TEXT columns unchanged
        for name, value in (("cp_from", cp_from), ("cp_to", cp_to), ("state_checksum", state_checksum)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string or null, got {type(value).__name__}")
        metadata = normalize(metadata or {})
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be a mapping")

        with self.storage.transaction():
            key = self.keys.active()
            unsigned = HistoryEntry(
                id=0,
                ts=utc_now_iso(),
                actor=actor,
                action=action,
                cp_from=cp_from,
                cp_to=cp_to,
                state_checksum=state_checksum,
                hmac_prev=self.storage.tail_hmac(),
                metadata=metadata,
                key_id=key.id,
            )
            signed = HistoryEntry(**{**unsigned.to_dict(), "hmac": entry_digest(key.secret, unsigned)})
            stored = self.storage.insert_entry(signed)

        logger.debug("Appended history entry %d (%s by %s)", stored.id, action, actor)
        return stored

    def append_entry(self, entry: Dict[str, Any]) -> HistoryEntry:
        """Append from a request-shaped mapping: {actor, action, cp_from?, cp_to?, state_checksum?, metadata?}"""
        unknown = set(entry) - {"actor", "action", "cp_from", "cp_to", "state_checksum", "metadata"}
        if unknown:
            raise ValidationError(f"Unknown history fields: {sorted(unknown)}")
        action = entry.get("action")
        if isinstance(action, str) and action in RESERVED_ACTIONS:
            raise ValidationError(f"Action {action!r} is reserved; use tombstone or archive")
        return self.append(
            actor=entry.get("actor") or "system",
            action=action or "",
            cp_from=entry.get("cp_from"),
            cp_to=entry.get("cp_to"),
            state_checksum=entry.get("state_checksum"),
            metadata=entry.get("metadata"),
        )

    def tombstone(self, entry_id: int, actor: str = "system") -> HistoryEntry:
        """Soft-delete: the target stays untouched, a delete_history entry records the deletion."""
        with self.storage.transaction():
            if self.storage.get_entry(entry_id) is None:
                raise NotFoundError(f"History entry {entry_id} not found")
            marker = self.append(actor=actor, action=DELETE_HISTORY, metadata={"target_id": entry_id})
        logger.info("Tombstoned history entry %d (marker %d, actor %s)", entry_id, marker.id, actor)
        return marker

    def get(self, entry_id: int) -> HistoryEntry:
        entry = self.storage.get_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"History entry {entry_id} not found")
        return entry

    def entries(self, limit: int = 0) -> List[HistoryEntry]:
        """Copy of the live chain in ascending id order (last `limit` when limit > 0)."""
        return self.storage.load_entries(limit)

    def tail_hmac(self) -> Optional[str]:
        """hmac the next entry will link to, useful for checkpoints."""
        return self.storage.tail_hmac()

    def count(self) -> int:
        return self.storage.count_entries()

    def tombstoned_ids(self) -> Set[int]:
        return self.storage.tombstone_targets()

    def is_tombstoned(self, entry_id: int) -> bool:
        return entry_id in self.tombstoned_ids()

    def search(
        self,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = SEARCH_CAP,
        include_tombstoned: bool = True,
    ) -> List[HistoryEntry]:
        """Newest first, capped at 1000 rows."""
        limit = max(1, min(limit, SEARCH_CAP))
        since = to_utc_iso(since) if since else None
        until = to_utc_iso(until) if until else None
        with self.storage.transaction(exclusive=False):
            results = self.storage.search_entries(actor, action, since, until, limit)
            if include_tombstoned:
                return results
            hidden = self.storage.tombstone_targets()
        return [e for e in results if e.id not in hidden]
