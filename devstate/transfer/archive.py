import logging
from dataclasses import dataclass, asdict
from itertools import takewhile
from pathlib import Path
from typing import Optional

from devstate.chain.ledger import ARCHIVE_HISTORY, HistoryLedger
from devstate.core.errors import ChainIntegrityError
from devstate.core.types import VerificationResult, parse_ts, to_utc_iso
from devstate.crypto.keys import KeyManager
from devstate.storage.sqlite import ARCHIVE_ANCHOR, ARCHIVED_THROUGH, SQLiteStorage
from devstate.transfer.snapshot import parse_entries, read_json, write_json_atomic
from devstate.verify.verifier import verify_chain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveResult:
    archived: int
    first_id: Optional[int] = None
    last_id: Optional[int] = None
    path: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class Archiver:
    """
    Moves the oldest part of the live ledger into cold storage.

    Archived entries keep their id, order and chain fields. The earliest live
    entry is not re-linked: its hmac_prev keeps pointing at the last archived
    entry, whose hmac is remembered as the archive anchor.
    """

    def __init__(self, storage: SQLiteStorage, keys: KeyManager, ledger: HistoryLedger, archive_dir: Path):
        self.storage = storage
        self.keys = keys
        self.ledger = ledger
        self.archive_dir = Path(archive_dir)

    def archive(self, cutoff: str, actor: str = "system") -> ArchiveResult:
        """Relocate the leading run of entries with ts < cutoff."""
        cutoff = to_utc_iso(cutoff)
        path = None
        try:
            with self.storage.transaction():
                live = self.storage.load_entries()
                cutoff_at = parse_ts(cutoff)
                segment = list(takewhile(lambda e: parse_ts(e.ts) < cutoff_at, live))
                if not segment:
                    return ArchiveResult(archived=0)

                anchor = self.storage.get_meta(ARCHIVE_ANCHOR)
                check = verify_chain(segment, self.keys.secrets(), self.keys.active().secret, anchor)
                if not check.ok:
                    raise ChainIntegrityError(
                        f"Refusing to archive a broken segment: {check.reason} at id={check.position}",
                        position=check.position,
                        reason=check.reason,
                    )

                first, last = segment[0], segment[-1]
                path = self.archive_dir / f"history-{first.id:08d}-{last.id:08d}.json"
                write_json_atomic(path, {
                    "cutoff": cutoff,
                    "anchor_hmac": anchor,
                    "entries": [e.to_dict() for e in segment],
                })

                self.storage.delete_entries_through(last.id)
                self.storage.set_meta(ARCHIVE_ANCHOR, last.hmac)
                self.storage.set_meta(ARCHIVED_THROUGH, str(last.id))
                self.ledger.append(
                    actor=actor,
                    action=ARCHIVE_HISTORY,
                    metadata={"first_id": first.id, "last_id": last.id, "count": len(segment), "file": path.name},
                )
        except BaseException:
            if path is not None and path.exists():
                path.unlink()
            raise

        logger.info("Archived history %d..%d (%d entries) to %s", first.id, last.id, len(segment), path)
        return ArchiveResult(archived=len(segment), first_id=first.id, last_id=last.id, path=str(path))

    def verify_archive(self, path: Path) -> VerificationResult:
        """Offline re-verification of a cold-storage segment."""
        payload = read_json(Path(path))
        entries = parse_entries(payload)
        result = verify_chain(entries, self.keys.secrets(), self.keys.active().secret, payload.get("anchor_hmac"))
        if not result.ok:
            logger.warning("Archive %s failed verification at %s: %s", path, result.position, result.reason)
        return result
