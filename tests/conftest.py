import contextlib
from pathlib import Path

import pytest

from mcp_mailbox.config import clear_settings_cache
from mcp_mailbox.db import reset_database_state


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("HTTP_PATH", "/mcp/")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    # Tool panels are noisy under pytest; test_app_helpers turns them back on where needed.
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield db_path
    finally:
        clear_settings_cache()
        reset_database_state()
        for suffix in ("", "-wal", "-shm"):
            leftover = db_path.with_name(db_path.name + suffix)
            if leftover.exists():
                leftover.unlink()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state between tests, including ones that skip ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
