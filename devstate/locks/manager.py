import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from devstate.core.errors import ConcurrencyError, ValidationError
from devstate.core.types import Lease
from devstate.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


class LockManager:
    """
    Time-bounded leases over named scopes.

    Leases are cooperative signals to external agents: they never gate
    StateStore.update(), which serializes on its own. Several live leases may
    share a scope unless the caller asks for an exclusive one.
    """

    def __init__(self, storage: SQLiteStorage):
        self.storage = storage

    def acquire(
        self,
        scope: str,
        ttl_seconds: float,
        actor: str = "system",
        exclusive: bool = False,
    ) -> Lease:
        if not scope:
            raise ValidationError("Lock scope is required")
        if ttl_seconds <= 0:
            raise ValidationError("ttl_seconds must be positive")

        now = datetime.now(timezone.utc)
        lease = Lease(
            lock_id=str(uuid.uuid4()),
            scope=scope,
            actor=actor,
            expires_at=_iso(now + timedelta(seconds=ttl_seconds)),
        )
        with self.storage.transaction():
            if exclusive:
                holders = self.storage.live_leases(_iso(now), scope=scope)
                if holders:
                    raise ConcurrencyError(
                        f"Scope '{scope}' is held by {holders[0].actor} until {holders[0].expires_at}"
                    )
            self.storage.insert_lease(lease)

        logger.debug("Lease %s acquired on %s by %s (ttl %ss)", lease.lock_id, scope, actor, ttl_seconds)
        return lease

    def release(self, lock_id: str) -> bool:
        """Idempotent: releasing an unknown or already-released id is a successful no-op."""
        with self.storage.transaction():
            removed = self.storage.delete_lease(lock_id)
        logger.debug("Lease %s %s", lock_id, "released" if removed else "already gone")
        return removed

    def cleanup(self) -> int:
        """Delete every expired lease. Safe to call repeatedly and concurrently."""
        with self.storage.transaction():
            removed = self.storage.delete_expired_leases(_iso(datetime.now(timezone.utc)))
        if removed:
            logger.info("Swept %d expired lease(s)", removed)
        return removed

    def active(self, scope: Optional[str] = None) -> List[Lease]:
        return self.storage.live_leases(_iso(datetime.now(timezone.utc)), scope=scope)
