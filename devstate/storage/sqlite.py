import os
import sqlite3
import json
import threading
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Set

from devstate.core.errors import ConcurrencyError
from devstate.core.types import HistoryEntry, HmacKey, Lease, StateDocument
from . import StorageBackend

logger = logging.getLogger(__name__)

ARCHIVE_ANCHOR = "archive_anchor"
ARCHIVED_THROUGH = "archived_through"

_ENTRY_COLUMNS = (
    "id, ts, actor, action, cp_from, cp_to, state_checksum, hmac_prev, hmac, metadata, key_id"
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS state_current (
    id          INTEGER PRIMARY KEY CHECK (id = 1),
    json        TEXT    NOT NULL,
    checksum    TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS history_entries (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    ts              TEXT    NOT NULL,
    actor           TEXT    NOT NULL,
    action          TEXT    NOT NULL,
    cp_from         TEXT,
    cp_to           TEXT,
    state_checksum  TEXT,
    hmac_prev       TEXT,
    hmac            TEXT    NOT NULL,
    metadata        TEXT    NOT NULL DEFAULT '{}',
    key_id          TEXT
);
CREATE INDEX IF NOT EXISTS idx_history_ts     ON history_entries(ts);
CREATE INDEX IF NOT EXISTS idx_history_actor  ON history_entries(actor);
CREATE INDEX IF NOT EXISTS idx_history_action ON history_entries(action);

CREATE TABLE IF NOT EXISTS hmac_keys (
    id          TEXT    PRIMARY KEY,
    secret      TEXT    NOT NULL,
    active      INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_one_active_key ON hmac_keys(active) WHERE active = 1;

CREATE TABLE IF NOT EXISTS devstate_locks (
    lock_id     TEXT    PRIMARY KEY,
    scope       TEXT    NOT NULL,
    actor       TEXT    NOT NULL,
    expires_at  TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_locks_scope   ON devstate_locks(scope);
CREATE INDEX IF NOT EXISTS idx_locks_expires ON devstate_locks(expires_at);

CREATE TABLE IF NOT EXISTS ledger_meta (
    key     TEXT PRIMARY KEY,
    value   TEXT
);
"""


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class SQLiteStorage(StorageBackend):
    """
    SQLite persistent storage (WAL).

    Thread-safe via one connection per thread. Writers take BEGIN IMMEDIATE,
    which is the single-writer hold over the state row and the chain tail;
    readers take BEGIN DEFERRED and see a stable WAL snapshot without blocking.
    """

    def __init__(self, db_path: str | Path | None = None, lock_timeout: float = 5.0):
        if db_path is None:
            env_path = os.environ.get("DEVSTATE_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "devstate.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()
        self.lock_timeout = lock_timeout

        self._local = threading.local()
        self._all_conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._closed = False
        self._create_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.lock_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute(f"PRAGMA busy_timeout={int(self.lock_timeout * 1000)}")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        with self._conns_lock:
            self._all_conns.append(conn)
        return conn

    def _create_schema(self):
        self.conn.executescript(_SCHEMA)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._closed:
            raise RuntimeError("Storage connection is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            self._local.depth = 0
            self._local.exclusive = False
        return conn

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    @contextmanager
    def transaction(self, exclusive: bool = True):
        """
        Re-entrant per thread: a nested call joins the outer unit, and only the
        outermost call commits or rolls back.
        """
        conn = self.conn
        if self._local.depth:
            if exclusive and not self._local.exclusive:
                raise RuntimeError("Cannot upgrade a read transaction to exclusive")
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        try:
            conn.execute("BEGIN IMMEDIATE" if exclusive else "BEGIN DEFERRED")
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise ConcurrencyError(
                    f"Could not acquire write hold within {self.lock_timeout}s"
                ) from e
            raise

        self._local.depth = 1
        self._local.exclusive = exclusive
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as exc:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.exception("Rollback failed on %s", self.db_path)
            if isinstance(exc, sqlite3.OperationalError) and _is_busy(exc):
                raise ConcurrencyError(f"Transaction aborted by lock contention: {exc}") from exc
            raise
        finally:
            self._local.depth = 0
            self._local.exclusive = False

    # ── state ──────────────────────────────────────────────────────────────

    def load_state(self) -> Optional[StateDocument]:
        row = self.conn.execute(
            "SELECT json, checksum, updated_at FROM state_current WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        return StateDocument(json=json.loads(row[0]), checksum=row[1], updated_at=row[2])

    def save_state(self, doc: StateDocument) -> None:
        self.conn.execute("""
            INSERT INTO state_current (id, json, checksum, updated_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                json = excluded.json,
                checksum = excluded.checksum,
                updated_at = excluded.updated_at
        """, (json.dumps(doc.json, separators=(",", ":")), doc.checksum, doc.updated_at))

    # ── history ────────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_entry(row) -> HistoryEntry:
        eid, ts, actor, action, cp_from, cp_to, checksum, prev, mac, meta, key_id = row
        return HistoryEntry(
            id=eid,
            ts=ts,
            actor=actor,
            action=action,
            cp_from=cp_from,
            cp_to=cp_to,
            state_checksum=checksum,
            hmac_prev=prev,
            hmac=mac,
            metadata=json.loads(meta) if meta else {},
            key_id=key_id,
        )

    def tail_hmac(self) -> Optional[str]:
        """hmac of the last live entry; after full archival, the archive anchor."""
        row = self.conn.execute(
            "SELECT hmac FROM history_entries ORDER BY id DESC LIMIT 1"
        ).fetchone()
        if row:
            return row[0]
        return self.get_meta(ARCHIVE_ANCHOR)

    def previous_hmac(self, entry_id: int) -> Optional[str]:
        """hmac of the live entry preceding `entry_id`, else the archive anchor."""
        row = self.conn.execute(
            "SELECT hmac FROM history_entries WHERE id < ? ORDER BY id DESC LIMIT 1",
            (entry_id,),
        ).fetchone()
        if row:
            return row[0]
        return self.get_meta(ARCHIVE_ANCHOR)

    def insert_entry(self, entry: HistoryEntry, keep_id: bool = False) -> HistoryEntry:
        params = (
            entry.ts, entry.actor, entry.action, entry.cp_from, entry.cp_to,
            entry.state_checksum, entry.hmac_prev, entry.hmac,
            json.dumps(entry.metadata, separators=(",", ":")), entry.key_id,
        )
        if keep_id:
            self.conn.execute(f"""
                INSERT INTO history_entries ({_ENTRY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (entry.id,) + params)
            return entry

        cur = self.conn.execute("""
            INSERT INTO history_entries
            (ts, actor, action, cp_from, cp_to, state_checksum, hmac_prev, hmac, metadata, key_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, params)
        return HistoryEntry(**{**entry.to_dict(), "id": cur.lastrowid})

    def get_entry(self, entry_id: int) -> Optional[HistoryEntry]:
        row = self.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM history_entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def load_entries(self, limit: int = 0) -> List[HistoryEntry]:
        """Ascending by id; the last `limit` entries when limit > 0."""
        if limit > 0:
            cursor = self.conn.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM (
                    SELECT {_ENTRY_COLUMNS} FROM history_entries ORDER BY id DESC LIMIT ?
                ) ORDER BY id ASC
            """, (limit,))
        else:
            cursor = self.conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM history_entries ORDER BY id ASC"
            )
        return [self._row_to_entry(row) for row in cursor]

    def search_entries(
        self,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 1000,
    ) -> List[HistoryEntry]:
        """Newest first."""
        where, params = [], []
        if actor:
            where.append("actor = ?")
            params.append(actor)
        if action:
            where.append("action = ?")
            params.append(action)
        if since:
            where.append("julianday(ts) >= julianday(?)")
            params.append(since)
        if until:
            where.append("julianday(ts) <= julianday(?)")
            params.append(until)
        sql = f"SELECT {_ENTRY_COLUMNS} FROM history_entries"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_entry(row) for row in self.conn.execute(sql, params)]

    def tombstone_targets(self) -> Set[int]:
        cursor = self.conn.execute("""
            SELECT json_extract(metadata, '$.target_id')
            FROM history_entries
            WHERE action = 'delete_history' AND json_type(metadata, '$.target_id') = 'integer'
        """)
        return {row[0] for row in cursor}

    def count_entries(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM history_entries").fetchone()[0]

    def clear_entries(self) -> None:
        self.conn.execute("DELETE FROM history_entries")
        # restart the id sequence so re-inserted ids continue without a gap
        self.conn.execute("DELETE FROM sqlite_sequence WHERE name = 'history_entries'")

    def delete_entries_through(self, last_id: int) -> int:
        cur = self.conn.execute("DELETE FROM history_entries WHERE id <= ?", (last_id,))
        return cur.rowcount

    def get_meta(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM ledger_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_meta(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self.conn.execute("DELETE FROM ledger_meta WHERE key = ?", (key,))
            return
        self.conn.execute("""
            INSERT INTO ledger_meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (key, value))

    # ── keys ───────────────────────────────────────────────────────────────

    def active_key(self) -> Optional[HmacKey]:
        row = self.conn.execute(
            "SELECT id, secret, active, created_at FROM hmac_keys WHERE active = 1"
        ).fetchone()
        return HmacKey(id=row[0], secret=row[1], active=True, created_at=row[3]) if row else None

    def get_key(self, key_id: str) -> Optional[HmacKey]:
        row = self.conn.execute(
            "SELECT id, secret, active, created_at FROM hmac_keys WHERE id = ?", (key_id,)
        ).fetchone()
        return HmacKey(id=row[0], secret=row[1], active=bool(row[2]), created_at=row[3]) if row else None

    def load_keys(self) -> List[HmacKey]:
        cursor = self.conn.execute(
            "SELECT id, secret, active, created_at FROM hmac_keys ORDER BY created_at ASC"
        )
        return [HmacKey(id=r[0], secret=r[1], active=bool(r[2]), created_at=r[3]) for r in cursor]

    def install_key(self, key: HmacKey) -> None:
        """Insert `key` as the sole active key; previous keys stay for verification."""
        self.conn.execute("UPDATE hmac_keys SET active = 0 WHERE active = 1")
        self.conn.execute(
            "INSERT INTO hmac_keys (id, secret, active, created_at) VALUES (?, ?, 1, ?)",
            (key.id, key.secret, key.created_at),
        )

    # ── leases ─────────────────────────────────────────────────────────────

    def insert_lease(self, lease: Lease) -> None:
        self.conn.execute(
            "INSERT INTO devstate_locks (lock_id, scope, actor, expires_at) VALUES (?, ?, ?, ?)",
            (lease.lock_id, lease.scope, lease.actor, lease.expires_at),
        )

    def delete_lease(self, lock_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM devstate_locks WHERE lock_id = ?", (lock_id,))
        return cur.rowcount > 0

    def delete_expired_leases(self, now_iso: str) -> int:
        cur = self.conn.execute("DELETE FROM devstate_locks WHERE expires_at <= ?", (now_iso,))
        return cur.rowcount

    def live_leases(self, now_iso: str, scope: Optional[str] = None) -> List[Lease]:
        sql = "SELECT lock_id, scope, actor, expires_at FROM devstate_locks WHERE expires_at > ?"
        params: list = [now_iso]
        if scope is not None:
            sql += " AND scope = ?"
            params.append(scope)
        sql += " ORDER BY expires_at ASC"
        return [Lease(*row) for row in self.conn.execute(sql, params)]

    # ── lifecycle ──────────────────────────────────────────────────────────

    def close(self) -> None:
        with self._conns_lock:
            for conn in self._all_conns:
                conn.close()
            self._all_conns.clear()
        self._closed = True
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
