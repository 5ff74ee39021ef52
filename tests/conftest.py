"""Pytest configuration for dbkeeper."""
import textwrap
from pathlib import Path

import pytest

from dbkeeper.base.config import set_config
from dbkeeper.data.registry import get_registry


@pytest.fixture(autouse=True)
def isolated_globals():
    # Each test gets a fresh registry and re-reads config from the environment
    get_registry().clear()
    set_config(None)
    yield
    get_registry().clear()
    set_config(None)


def _write_migration(directory: Path, filename: str, up: str, down: str) -> Path:
    """Write a migration file with an Up section, a down marker and a Down section."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(
        "-- Up\n" + textwrap.dedent(up).strip() + "\n\n-- Down\n" + textwrap.dedent(down).strip() + "\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def migrations_dir(tmp_path):
    return tmp_path / "migrations"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data" / "test.db"


@pytest.fixture
def write_migration():
    return _write_migration
