"""Shared test fixtures for the task board tests."""

import sys
import tempfile
from pathlib import Path

import pytest

# Ensure the repo root (pkg/, taskboard_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def db_path():
    """Path to a throwaway SQLite database, removed afterwards."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        path = tmp.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        Path(path + suffix).unlink(missing_ok=True)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def fake_sleep():
    return RecordingSleep()
