"""Pytest configuration and fixtures."""

import json
from pathlib import Path
from typing import Generator

import pytest

from devstate.core.config import Settings
from devstate.engine import DevStateEngine

TEST_SECRET = "test-secret-do-not-use"

STATE_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "project": {"type": "string"},
        "bad_field": {"type": "number"},
        "phase": {"type": "string", "enum": ["plan", "build", "ship"]},
    },
    "additionalProperties": True,
}


def write_schema(root: Path) -> Path:
    path = root / "docs" / "STATE.schema.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(STATE_SCHEMA), encoding="utf-8")
    return path


def make_settings(root: Path, db_name: str = "devstate.db", secret: str = TEST_SECRET) -> Settings:
    return Settings.from_env(
        db_path=root / db_name,
        hmac_secret=secret,
        repo_root=root,
        schema_path=write_schema(root),
        export_dir=root / ".trae",
        archive_dir=root / ".trae" / "archive",
        lock_timeout=2.0,
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def engine(settings: Settings) -> Generator[DevStateEngine, None, None]:
    """Engine over a fresh DB, seeded with an empty state document."""
    eng = DevStateEngine.open(settings)
    eng.seed_state({})
    yield eng
    eng.close()


@pytest.fixture
def fresh_engine(tmp_path: Path) -> Generator[DevStateEngine, None, None]:
    """Second, unseeded engine sharing the secret but not the DB."""
    other = tmp_path / "other"
    other.mkdir()
    eng = DevStateEngine.open(make_settings(other))
    yield eng
    eng.close()
