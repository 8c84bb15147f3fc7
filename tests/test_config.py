from pathlib import Path

from mcp_mailbox import config as _config
from mcp_mailbox.config import default_data_dir, default_database_url, get_settings


def test_defaults(monkeypatch):
    for name in (
        "DATABASE_URL",
        "HTTP_HOST",
        "HTTP_PORT",
        "HTTP_PATH",
        "APP_ENVIRONMENT",
        "TOOLS_LOG_ENABLED",
        "INSTRUMENTATION_ENABLED",
        "DATABASE_POOL_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)
    _config.clear_settings_cache()
    settings = get_settings()
    assert settings.environment == "development"
    assert settings.http.host == "127.0.0.1"
    assert settings.http.port == 3000
    assert settings.http.path == "/mcp/"
    assert settings.database.url == default_database_url()
    assert settings.database.pool_size is None
    assert settings.tools_log_enabled is True
    assert settings.instrumentation_enabled is False


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/x.sqlite3")
    monkeypatch.setenv("HTTP_PORT", "9001")
    monkeypatch.setenv("HTTP_PATH", "/custom/")
    monkeypatch.setenv("LOG_JSON_ENABLED", "yes")
    monkeypatch.setenv("INSTRUMENTATION_SLOW_QUERY_MS", "5")
    monkeypatch.setenv("DATABASE_POOL_SIZE", "3")
    _config.clear_settings_cache()
    settings = get_settings()
    assert settings.database.url.endswith("/x.sqlite3")
    assert settings.http.port == 9001
    assert settings.http.path == "/custom/"
    assert settings.log_json_enabled is True
    assert settings.instrumentation_slow_query_ms == 5
    assert settings.database.pool_size == 3


def test_bad_values_fall_back(monkeypatch):
    monkeypatch.setenv("HTTP_PORT", "not-a-port")
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "maybe")
    _config.clear_settings_cache()
    settings = get_settings()
    assert settings.http.port == 3000
    assert settings.tools_log_enabled is True


def test_settings_are_cached(monkeypatch):
    _config.clear_settings_cache()
    first = get_settings()
    monkeypatch.setenv("HTTP_PORT", "4242")
    assert get_settings() is first
    _config.clear_settings_cache()
    assert get_settings().http.port == 4242


def test_xdg_data_home(monkeypatch, tmp_path):
    monkeypatch.setattr(_config.sys, "platform", "linux")
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    assert default_data_dir() == Path(tmp_path) / "mcp-mailbox"
    assert default_database_url() == f"sqlite+aiosqlite:///{(tmp_path / 'mcp-mailbox' / 'mailbox.sqlite3').as_posix()}"
