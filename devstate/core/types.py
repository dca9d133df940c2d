# devstate/core/types.py
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from devstate.core.errors import ValidationError


def utc_now_iso() -> str:
    """ISO 8601 UTC with millis, e.g. 2026-01-31T14:00:00.000+00:00"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_ts(value: str) -> datetime:
    """Parse a stored timestamp; naive values and a trailing 'Z' are read as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc_iso(value: str) -> str:
    """Normalize a caller-supplied timestamp to the stored format; raises ValidationError if it does not parse."""
    try:
        return parse_ts(value).astimezone(timezone.utc).isoformat(timespec="milliseconds")
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp {value!r}: {e}") from e


@dataclass(frozen=True)
class StateDocument:
    """The singleton project-state document."""
    json: Dict[str, Any]
    checksum: str                   # "sha256:<hex>" over canonical_json(json)
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "StateDocument":
        return cls(json=d["json"], checksum=d["checksum"], updated_at=d.get("updated_at", ""))


@dataclass(frozen=True)
class HistoryEntry:
    """Single HMAC-chained entry in the audit ledger."""
    id: int                         # monotonic sequence, assigned by storage
    ts: str                         # ISO 8601 UTC with millis
    actor: str
    action: str                     # e.g. "update_state", "delete_history"
    cp_from: Optional[str] = None
    cp_to: Optional[str] = None
    state_checksum: Optional[str] = None
    hmac_prev: Optional[str] = None # None for the first entry
    hmac: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    key_id: Optional[str] = None    # which HmacKey signed this entry

    def signed_fields(self) -> dict:
        """The exact fields covered by the HMAC (id, links and key_id are not)."""
        return {
            "actor": self.actor,
            "action": self.action,
            "cp_from": self.cp_from,
            "cp_to": self.cp_to,
            "state_checksum": self.state_checksum,
            "metadata": self.metadata,
            "ts": self.ts,
        }

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "HistoryEntry":
        return cls(
            id=int(d["id"]),
            ts=d["ts"],
            actor=d["actor"],
            action=d["action"],
            cp_from=d.get("cp_from"),
            cp_to=d.get("cp_to"),
            state_checksum=d.get("state_checksum"),
            hmac_prev=d.get("hmac_prev"),
            hmac=d["hmac"],
            metadata=d.get("metadata") or {},
            key_id=d.get("key_id"),
        )


@dataclass(frozen=True)
class HmacKey:
    id: str
    secret: str
    active: bool = True
    created_at: str = ""

    def __repr__(self) -> str:
        # never leak the secret into logs / tracebacks
        return f"HmacKey(id={self.id!r}, active={self.active}, created_at={self.created_at!r})"


@dataclass(frozen=True)
class Lease:
    """Time-bounded advisory lock over a named scope."""
    lock_id: str
    scope: str
    actor: str
    expires_at: str

    def expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return parse_ts(self.expires_at) <= now

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of a prefix verification. A mismatch is a normal result, not an exception.
    `position` is the id of the first failing entry; `reason` is LINK_MISMATCH or DIGEST_MISMATCH.
    """
    ok: bool
    position: Optional[int] = None
    reason: Optional[str] = None
    checked: int = 0

    def __bool__(self):
        return self.ok

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "checked": self.checked}
        return {"ok": False, "position": self.position, "reason": self.reason, "checked": self.checked}

    def __str__(self):
        if self.ok:
            return f"Chain is valid ✓ ({self.checked} entries)"
        return f"Verification FAILED at entry {self.position}: {self.reason}"


LINK_MISMATCH = "LINK_MISMATCH"
DIGEST_MISMATCH = "DIGEST_MISMATCH"
