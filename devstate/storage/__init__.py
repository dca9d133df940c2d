"""
Storage backends for the state document, history ledger, signing keys and leases.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import List, Optional
from pathlib import Path

from devstate.core.types import HistoryEntry, HmacKey, Lease, StateDocument


class StorageBackend(ABC):
    """
    Abstract base for all persistent storage implementations.

    Every method runs inside the caller's current transaction when one is open
    on this thread; otherwise it runs as its own statement.
    """

    @abstractmethod
    def transaction(self, exclusive: bool = True) -> AbstractContextManager:
        """All-or-nothing unit. exclusive=True takes the single-writer hold."""

    # ── state ──
    @abstractmethod
    def load_state(self) -> Optional[StateDocument]:
        pass

    @abstractmethod
    def save_state(self, doc: StateDocument) -> None:
        pass

    # ── history ──
    @abstractmethod
    def tail_hmac(self) -> Optional[str]:
        pass

    @abstractmethod
    def insert_entry(self, entry: HistoryEntry, keep_id: bool = False) -> HistoryEntry:
        pass

    @abstractmethod
    def get_entry(self, entry_id: int) -> Optional[HistoryEntry]:
        pass

    @abstractmethod
    def load_entries(self, limit: int = 0) -> List[HistoryEntry]:
        pass

    @abstractmethod
    def clear_entries(self) -> None:
        pass

    # ── keys ──
    @abstractmethod
    def active_key(self) -> Optional[HmacKey]:
        pass

    @abstractmethod
    def get_key(self, key_id: str) -> Optional[HmacKey]:
        pass

    @abstractmethod
    def load_keys(self) -> List[HmacKey]:
        pass

    @abstractmethod
    def install_key(self, key: HmacKey) -> None:
        pass

    # ── leases ──
    @abstractmethod
    def insert_lease(self, lease: Lease) -> None:
        pass

    @abstractmethod
    def delete_lease(self, lock_id: str) -> bool:
        pass

    @abstractmethod
    def delete_expired_leases(self, now_iso: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


def create_storage(uri: str, lock_timeout: float = 5.0) -> StorageBackend:
    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        # Extract everything after sqlite://
        raw_path = uri[len("sqlite://"):]
        if raw_path.startswith("//"):
            raw_path = raw_path[1:]
        absolute_path = Path(raw_path).resolve()
        return SQLiteStorage(absolute_path, lock_timeout=lock_timeout)
    else:
        raise ValueError(f"Unsupported storage URI: {uri}")


from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "create_storage", "SQLiteStorage"]
