import logging
from typing import Any, Dict, Mapping

from devstate.chain.ledger import HistoryLedger
from devstate.core.canon import normalize
from devstate.core.errors import NotFoundError, ValidationError
from devstate.core.types import StateDocument, utc_now_iso
from devstate.crypto.hashing import state_checksum
from devstate.schema.validator import SchemaValidator
from devstate.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

UPDATE_STATE = "update_state"


def shallow_merge(current: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Top-level key replacement, never recursive.

    {"a": {"x": 1, "y": 2}} + {"a": {"x": 1}} → {"a": {"x": 1}}
    """
    merged: Dict[str, Any] = {}
    for key, value in current.items():
        merged[key] = value
    for key, value in patch.items():
        merged[key] = value
    return merged


class StateStore:
    """
    Holds the singleton state document and its checksum.
    Every update is persisted together with its ledger entry, or not at all.
    """

    def __init__(self, storage: SQLiteStorage, validator: SchemaValidator, ledger: HistoryLedger):
        self.storage = storage
        self.validator = validator
        self.ledger = ledger

    def get(self) -> StateDocument:
        doc = self.storage.load_state()
        if doc is None:
            raise NotFoundError("state_current missing: store was never seeded")
        return doc

    def seed(self, document: Mapping[str, Any]) -> StateDocument:
        """Provision the singleton row. Returns the existing row if already seeded."""
        document = normalize(dict(document))
        self.validator.require_valid(document)
        with self.storage.transaction():
            existing = self.storage.load_state()
            if existing is not None:
                return existing
            doc = StateDocument(json=document, checksum=state_checksum(document), updated_at=utc_now_iso())
            self.storage.save_state(doc)
        logger.info("Seeded state document (%s)", doc.checksum)
        return doc

    def update(self, patch: Mapping[str, Any], actor: str = "system") -> StateDocument:
        """
        Shallow-merge `patch` into the current document under the exclusive hold,
        validate, persist with a fresh checksum and append the ledger entry.
        """
        if not isinstance(patch, Mapping):
            raise ValidationError("State patch must be a JSON object")
        patch = normalize(dict(patch))

        with self.storage.transaction():
            current = self.get()
            merged = shallow_merge(current.json, patch)
            self.validator.require_valid(merged)

            doc = StateDocument(json=merged, checksum=state_checksum(merged), updated_at=utc_now_iso())
            self.storage.save_state(doc)
            entry = self.ledger.append(
                actor=actor,
                action=UPDATE_STATE,
                state_checksum=doc.checksum,
                metadata={"patch_keys": list(patch)},
            )

        logger.info("State updated by %s → %s (history %d)", actor, doc.checksum, entry.id)
        return doc
