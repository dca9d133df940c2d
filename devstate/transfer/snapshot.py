"""
Import/export of the state document + full history as one trust-checked unit.

Export is a read-only snapshot. Import is the trust boundary: the incoming
ledger replaces the live one wholesale, and only if every link and digest
verifies; otherwise nothing changes.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, List, Optional

from devstate.core.errors import ChainIntegrityError, NotFoundError, ValidationError
from devstate.core.types import HistoryEntry, StateDocument, to_utc_iso, utc_now_iso
from devstate.crypto.hashing import state_checksum
from devstate.crypto.keys import KeyManager
from devstate.schema.validator import SchemaValidator
from devstate.storage.sqlite import ARCHIVE_ANCHOR, ARCHIVED_THROUGH, SQLiteStorage
from devstate.verify.verifier import verify_chain

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
HISTORY_FILE = "history.json"


def write_json_atomic(path: Path, payload: Any) -> Path:
    """Write to a temp file in the target directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with NamedTemporaryFile("w", encoding="utf-8", dir=path.parent, delete=False) as tmp:
        json.dump(payload, tmp, indent=2)
        tmp_path = Path(tmp.name)
    tmp_path.replace(path)
    return path


def read_json(path: Path) -> Any:
    if not path.exists():
        raise NotFoundError(f"Snapshot file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Snapshot file is not valid JSON: {path}: {e}") from e


def parse_entries(history: Any) -> List[HistoryEntry]:
    if not isinstance(history, dict) or not isinstance(history.get("entries"), list):
        raise ValidationError("History snapshot must be an object with an 'entries' list")
    try:
        entries = [HistoryEntry.from_dict(e) for e in history["entries"]]
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed history entry: {e}") from e

    for entry in entries:
        text_fields = (entry.ts, entry.actor, entry.action, entry.hmac)
        optional_fields = (entry.cp_from, entry.cp_to, entry.state_checksum, entry.hmac_prev, entry.key_id)
        if not all(isinstance(v, str) for v in text_fields) or not all(
            v is None or isinstance(v, str) for v in optional_fields
        ):
            raise ValidationError(f"History entry {entry.id} has a non-string text field")
        if not isinstance(entry.metadata, dict):
            raise ValidationError(f"History entry {entry.id} metadata must be an object")
        # stored as signed; ordering queries compare the parsed instant
        to_utc_iso(entry.ts)
    return entries


@dataclass(frozen=True)
class Snapshot:
    state: Dict[str, Any]       # StateDocument.to_dict()
    history: Dict[str, Any]     # {"entries": [...], "anchor_hmac": str | None}


class SnapshotTransfer:

    def __init__(
        self,
        storage: SQLiteStorage,
        validator: SchemaValidator,
        keys: KeyManager,
        export_dir: Path,
    ):
        self.storage = storage
        self.validator = validator
        self.keys = keys
        self.export_dir = Path(export_dir)

    def export(self) -> Snapshot:
        """Consistent read of state + ordered history. No mutation."""
        with self.storage.transaction(exclusive=False):
            doc = self.storage.load_state()
            if doc is None:
                raise NotFoundError("state_current missing: nothing to export")
            entries = self.storage.load_entries()
            anchor = self.storage.get_meta(ARCHIVE_ANCHOR)
        return Snapshot(
            state=doc.to_dict(),
            history={"entries": [e.to_dict() for e in entries], "anchor_hmac": anchor},
        )

    def export_files(self, root: Optional[Path] = None) -> List[Path]:
        root = Path(root) if root else self.export_dir
        snap = self.export()
        written = [
            write_json_atomic(root / STATE_FILE, snap.state),
            write_json_atomic(root / HISTORY_FILE, snap.history),
        ]
        logger.info("Exported state + %d history entries to %s", len(snap.history["entries"]), root)
        return written

    def import_snapshot(self, state: Dict[str, Any], history: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate the state, verify the incoming chain end to end, then replace
        state and ledger in one exclusive unit. Raises ValidationError or
        ChainIntegrityError and leaves the store untouched on any mismatch.
        """
        if not isinstance(state, dict) or not isinstance(state.get("json"), dict):
            raise ValidationError("State snapshot must be an object with a 'json' object")
        document = state["json"]
        self.validator.require_valid(document)

        checksum = state_checksum(document)
        recorded = state.get("checksum")
        if recorded and recorded != checksum:
            raise ChainIntegrityError(f"State checksum mismatch: snapshot says {recorded}, content is {checksum}")

        entries = parse_entries(history)
        anchor = history.get("anchor_hmac")
        for prev, cur in zip(entries, entries[1:]):
            if cur.id <= prev.id:
                raise ChainIntegrityError(
                    f"History ids not strictly increasing at id={cur.id}", position=cur.id
                )

        with self.storage.transaction():
            result = verify_chain(entries, self.keys.secrets(), self.keys.active().secret, anchor)
            if not result.ok:
                logger.warning("Rejected import: %s at id=%s", result.reason, result.position)
                raise ChainIntegrityError(
                    f"History chain mismatch at id={result.position}: {result.reason}",
                    position=result.position,
                    reason=result.reason,
                )

            self.storage.save_state(StateDocument(
                json=document,
                checksum=checksum,
                updated_at=state.get("updated_at") or utc_now_iso(),
            ))
            self.storage.clear_entries()
            for entry in entries:
                self.storage.insert_entry(entry, keep_id=True)
            self.storage.set_meta(ARCHIVE_ANCHOR, anchor)
            self.storage.set_meta(ARCHIVED_THROUGH, str(entries[0].id - 1) if anchor and entries else None)

        logger.info("Imported state %s with %d history entries", checksum, len(entries))
        return {"ok": True, "checksum": checksum, "entries": len(entries)}

    def import_files(self, root: Optional[Path] = None) -> Dict[str, Any]:
        root = Path(root) if root else self.export_dir
        state = read_json(root / STATE_FILE)
        history = read_json(root / HISTORY_FILE)
        return self.import_snapshot(state, history)
