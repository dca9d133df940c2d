# devstate/core/config.py
"""
Process configuration, loaded once at startup and passed by reference.

Resolution order for every setting:
1. explicit argument
2. environment variable
3. default
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from devstate.core.errors import ConfigurationError

DEFAULT_LOCK_TIMEOUT = 5.0


def detect_repo_root(cwd: Optional[Path] = None) -> Path:
    """REPO_ROOT wins; when running from devstate/server use the monorepo root; else cwd."""
    env_root = os.environ.get("REPO_ROOT")
    if env_root:
        return Path(env_root).resolve()
    cwd = (cwd or Path.cwd()).resolve()
    if cwd.name == "server" and cwd.parent.name == "devstate":
        return cwd.parent.parent
    return cwd


def find_schema(repo_root: Path) -> Optional[Path]:
    candidates = [
        repo_root / "docs" / "STATE.schema.json",
        repo_root / "devstate" / "docs" / "STATE.schema.json",
    ]
    for p in candidates:
        if p.exists():
            return p
    return None


@dataclass(frozen=True)
class Settings:
    db_path: Path
    hmac_secret: Optional[str]
    repo_root: Path
    schema_path: Optional[Path]
    export_dir: Path
    archive_dir: Path
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT

    @classmethod
    def from_env(
        cls,
        db_path: Optional[Path] = None,
        hmac_secret: Optional[str] = None,
        repo_root: Optional[Path] = None,
        schema_path: Optional[Path] = None,
        export_dir: Optional[Path] = None,
        archive_dir: Optional[Path] = None,
        lock_timeout: Optional[float] = None,
    ) -> "Settings":
        root = Path(repo_root).resolve() if repo_root else detect_repo_root()

        if db_path is None:
            env_path = os.environ.get("DEVSTATE_DB_PATH")
            db_path = Path(env_path) if env_path else Path.cwd() / "devstate.db"

        # Prefer neutral name; legacy deployments still set BEAMLINE_HMAC_SECRET
        if hmac_secret is None:
            hmac_secret = os.environ.get("HMAC_SECRET") or os.environ.get("BEAMLINE_HMAC_SECRET")

        if schema_path is None:
            env_schema = os.environ.get("DEVSTATE_SCHEMA_PATH")
            schema_path = Path(env_schema) if env_schema else find_schema(root)

        if export_dir is None:
            env_export = os.environ.get("DEVSTATE_EXPORT_DIR")
            export_dir = Path(env_export) if env_export else root / ".trae"

        if archive_dir is None:
            env_archive = os.environ.get("DEVSTATE_ARCHIVE_DIR")
            archive_dir = Path(env_archive) if env_archive else Path(export_dir) / "archive"

        if lock_timeout is None:
            raw = os.environ.get("DEVSTATE_LOCK_TIMEOUT")
            try:
                lock_timeout = float(raw) if raw else DEFAULT_LOCK_TIMEOUT
            except ValueError:
                raise ConfigurationError(f"DEVSTATE_LOCK_TIMEOUT is not a number: {raw!r}")

        return cls(
            db_path=Path(db_path).resolve(),
            hmac_secret=hmac_secret,
            repo_root=root,
            schema_path=Path(schema_path).resolve() if schema_path else None,
            export_dir=Path(export_dir).resolve(),
            archive_dir=Path(archive_dir).resolve(),
            lock_timeout=lock_timeout,
        )

    def require(self) -> "Settings":
        """Refuse to run unsigned or unvalidated. Raises ConfigurationError."""
        if not self.hmac_secret:
            raise ConfigurationError("Missing signing secret: set HMAC_SECRET")
        if self.schema_path is None:
            raise ConfigurationError(
                f"STATE.schema.json not found under {self.repo_root} (set DEVSTATE_SCHEMA_PATH)"
            )
        if not self.schema_path.exists():
            raise ConfigurationError(f"Schema file not found: {self.schema_path}")
        if self.lock_timeout <= 0:
            raise ConfigurationError("lock_timeout must be positive")
        return self

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)
