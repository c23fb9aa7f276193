"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Generator
from datetime import datetime, timezone

import pytest

from governance.db.manager import DatabaseManager
from governance.db.store import UsageRecord, UsageStore
from governance.quota.manager import QuotaManager


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup, including WAL side files
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        try:
            os.unlink(path)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def usage_store(db_manager: DatabaseManager) -> UsageStore:
    """UsageStore over the temporary database."""
    return UsageStore(db_manager)


@pytest.fixture
def quota_manager(usage_store: UsageStore) -> QuotaManager:
    """QuotaManager over the temporary database."""
    return QuotaManager(usage_store)


@pytest.fixture
def make_record():
    """Factory for usage records with starter-sized defaults."""

    def _make(org_id: str = "org_123", **overrides) -> UsageRecord:
        values = {
            "org_id": org_id,
            "plan_tier": "starter",
            "api_calls_used": 0,
            "api_calls_limit": 1000,
            "storage_used_bytes": 0,
            "storage_limit_bytes": 1024**3,
            "recordings_used": 0,
            "recordings_limit": 10,
            "reset_at": datetime(2024, 2, 1, tzinfo=timezone.utc),
        }
        values.update(overrides)
        return UsageRecord(**values)

    return _make
