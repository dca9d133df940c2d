# devstate/crypto/keys.py
import logging
import sqlite3
from typing import Dict, Optional

from devstate.core.errors import ConfigurationError, ValidationError
from devstate.core.types import HmacKey, utc_now_iso
from devstate.crypto.hashing import key_fingerprint
from devstate.storage import StorageBackend

logger = logging.getLogger(__name__)


class KeyManager:
    """
    Owns the HMAC signing material.

    Exactly one key is active; rotation installs a new active key and keeps
    retired ones so entries they signed can still be verified. Historical
    entries are never re-signed.
    """

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def bootstrap(self, secret: Optional[str]) -> HmacKey:
        """
        Install the deployment secret as the active key unless one is already active.

        With an active key present, the configured secret must be that key or a
        key it was rotated away from; any other secret is a misconfiguration.
        """
        if not secret:
            raise ConfigurationError("Missing signing secret: refusing to operate unsigned")
        key_id = key_fingerprint(secret)
        with self.storage.transaction():
            current = self.storage.active_key()
            existing = self.storage.get_key(key_id)
            if current is not None:
                if current.secret == secret:
                    return current
                if existing is not None and existing.secret == secret:
                    logger.info("Configured secret was rotated out; signing with active key %s", current.id)
                    return current
                raise ConfigurationError(
                    f"Configured secret does not match active key {current.id}; use rotate-key to change it"
                )
            if existing is not None:
                raise ConfigurationError(
                    f"Configured secret matches retired key {key_id}; rotate to a fresh secret"
                )
            key = HmacKey(id=key_id, secret=secret, active=True, created_at=utc_now_iso())
            self.storage.install_key(key)
        logger.info("Installed bootstrap signing key %s", key.id)
        return key

    def active(self) -> HmacKey:
        key = self.storage.active_key()
        if key is None:
            raise ConfigurationError("No active signing key; engine was not bootstrapped")
        return key

    def rotate_key(self, key_id: str, secret: str) -> HmacKey:
        """Make (key_id, secret) the active key for all subsequent appends."""
        if not secret:
            raise ConfigurationError("Cannot rotate to an empty secret")
        if not key_id:
            raise ValidationError("Key id is required")
        key = HmacKey(id=key_id, secret=secret, active=True, created_at=utc_now_iso())
        with self.storage.transaction():
            if self.storage.get_key(key_id) is not None:
                raise ValidationError(f"Key id already exists: {key_id}")
            try:
                self.storage.install_key(key)
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Could not install key {key_id}: {e}") from e
        logger.info("Rotated signing key; %s is now active", key_id)
        return key

    def secrets(self) -> Dict[str, str]:
        """key id → secret, for verifying entries signed by any known key."""
        return {k.id: k.secret for k in self.storage.load_keys()}

