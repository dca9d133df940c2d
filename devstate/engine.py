"""
DevStateEngine: wires the state store, ledger, verifier, locks, transfer and
key lifecycle over one storage backend and one set of settings.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from devstate.chain.ledger import HistoryLedger
from devstate.core.config import Settings
from devstate.core.errors import ConfigurationError
from devstate.core.types import HistoryEntry, HmacKey, Lease, StateDocument, VerificationResult
from devstate.crypto.keys import KeyManager
from devstate.locks.manager import LockManager
from devstate.schema.validator import SchemaValidator
from devstate.state.store import StateStore
from devstate.storage import create_storage
from devstate.storage.sqlite import SQLiteStorage
from devstate.transfer.archive import ArchiveResult, Archiver
from devstate.transfer.snapshot import Snapshot, SnapshotTransfer
from devstate.verify.verifier import ChainVerifier

logger = logging.getLogger(__name__)


class DevStateEngine:

    def __init__(self, settings: Settings, storage: SQLiteStorage, validator: SchemaValidator):
        self.settings = settings
        self.storage = storage
        self.validator = validator

        self.keys = KeyManager(storage)
        self.ledger = HistoryLedger(storage, self.keys)
        self.state = StateStore(storage, validator, self.ledger)
        self.verifier = ChainVerifier(storage, self.keys)
        self.locks = LockManager(storage)
        self.transfer = SnapshotTransfer(storage, validator, self.keys, settings.export_dir)
        self.archiver = Archiver(storage, self.keys, self.ledger, settings.archive_dir)

    @classmethod
    def open(cls, settings: Optional[Settings] = None) -> "DevStateEngine":
        """
        Build an engine from settings (default: environment).
        Raises ConfigurationError before touching storage if the secret or schema is missing.
        """
        settings = (settings or Settings.from_env()).require()
        validator = SchemaValidator.from_path(settings.schema_path)
        storage = create_storage(f"sqlite://{settings.db_path}", lock_timeout=settings.lock_timeout)
        engine = cls(settings, storage, validator)
        try:
            engine.keys.bootstrap(settings.hmac_secret)
        except ConfigurationError:
            engine.close()
            raise
        logger.info("DevState engine ready (db=%s)", settings.db_path)
        return engine

    # ── state ──

    def get_state(self) -> StateDocument:
        return self.state.get()

    def seed_state(self, document: Mapping[str, Any]) -> StateDocument:
        return self.state.seed(document)

    def update_state(self, patch: Mapping[str, Any], actor: str = "system") -> StateDocument:
        return self.state.update(patch, actor)

    # ── history ──

    def append_history(self, entry: Dict[str, Any]) -> HistoryEntry:
        return self.ledger.append_entry(entry)

    def tombstone_history(self, entry_id: int, actor: str = "system") -> HistoryEntry:
        return self.ledger.tombstone(entry_id, actor)

    def search_history(self, **filters) -> List[HistoryEntry]:
        return self.ledger.search(**filters)

    def verify(self, limit: int = 0) -> VerificationResult:
        return self.verifier.verify(limit)

    # ── locks ──

    def lock(self, scope: str, ttl_seconds: float, actor: str = "system", exclusive: bool = False) -> Lease:
        return self.locks.acquire(scope, ttl_seconds, actor, exclusive)

    def unlock(self, lock_id: str) -> bool:
        return self.locks.release(lock_id)

    def cleanup_locks(self) -> int:
        return self.locks.cleanup()

    # ── import / export ──

    def export(self) -> Snapshot:
        return self.transfer.export()

    def export_files(self, root: Optional[Path] = None) -> List[Path]:
        return self.transfer.export_files(root)

    def import_snapshot(self, state: Dict[str, Any], history: Dict[str, Any]) -> Dict[str, Any]:
        return self.transfer.import_snapshot(state, history)

    def import_files(self, root: Optional[Path] = None) -> Dict[str, Any]:
        return self.transfer.import_files(root)

    # ── keys / archival ──

    def rotate_key(self, key_id: str, secret: str) -> HmacKey:
        return self.keys.rotate_key(key_id, secret)

    def archive(self, cutoff: str, actor: str = "system") -> ArchiveResult:
        return self.archiver.archive(cutoff, actor)

    def verify_archive(self, path: Path) -> VerificationResult:
        return self.archiver.verify_archive(path)

    def close(self) -> None:
        self.storage.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
