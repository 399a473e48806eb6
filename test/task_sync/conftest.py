"""
Shared fixtures for Task Sync Engine tests.

Every test gets its own temporary SQLite database so runs stay isolated.
"""

import sys
import tempfile
from pathlib import Path

import pytest

# Makes the fakes module importable from every test module
sys.path.insert(0, str(Path(__file__).parent))

from task_sync.config import SyncConfig
from task_sync.database import TaskDatabase
from task_sync.queue import MutationQueue
from task_sync.sync_service import SyncOrchestrator

from fakes import FakeTransport


@pytest.fixture
def db():
    """Create temporary database for testing."""
    with tempfile.NamedTemporaryFile(delete=False, suffix='.db') as f:
        db_path = f.name

    database = TaskDatabase(db_path)
    yield database
    database.close()
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def queue(db):
    return MutationQueue(db, retry_limit=3)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_orchestrator(db):
    """Factory building an orchestrator over the test database."""

    def _make(transport=None, batch_size=50, retry_limit=3):
        config = SyncConfig(batch_size=batch_size, retry_limit=retry_limit)
        return SyncOrchestrator(
            db,
            MutationQueue(db, retry_limit=retry_limit),
            transport or FakeTransport(),
            config=config,
        )

    return _make


@pytest.fixture(autouse=True)
def clean_sync_env(monkeypatch):
    """Keep developer environment variables out of config-sensitive tests."""
    for name in ("SYNC_BATCH_SIZE", "SYNC_RETRY_ATTEMPTS", "API_BASE_URL",
                 "SYNC_TIMEOUT_SECONDS", "HEALTH_TIMEOUT_SECONDS", "DATABASE_PATH"):
        monkeypatch.delenv(name, raising=False)
