"""Shared fixtures."""

import pytest

from governor.config import reset_tier_plans
from governor.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each storage-backed test runs against both backends."""
    if request.param == "memory":
        return InMemoryStorage()
    return SQLiteStorage(db_path=str(tmp_path / "governor.db"))


@pytest.fixture(autouse=True)
def _clean_config(monkeypatch):
    for var in (
        "GOVERNOR_TIERS_JSON",
        "GOVERNOR_FAIL_MODE",
        "GOVERNOR_DB_PATH",
        "GOVERNOR_STORE_TIMEOUT",
        "GOVERNOR_API_KEY",
        "GOVERNOR_CRON_SECRET",
        "GOVERNOR_HANDLERS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
    reset_tier_plans()
