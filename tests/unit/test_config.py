"""
Tests for settings and database URL handling.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from tracematrix.core.config import Settings, get_settings
from tracematrix.core.constants import ReconcileMode
from tracematrix.database.config import _expand_sqlite_path, _mask_password, get_database_url


@pytest.fixture
def clean_settings(monkeypatch):
    """Reset cached settings around environment changes."""
    for name in ("APP_ENV", "LOG_LEVEL", "DATABASE_URL", "IMPORT_DEFAULT_MODE", "IMPORT_CHANGED_BY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, clean_settings):
        settings = Settings(_env_file=None)

        assert settings.app_name == "tracematrix"
        assert settings.is_development
        assert settings.importing.default_mode == ReconcileMode.UPDATE
        assert settings.importing.changed_by == "system"
        assert settings.database.url.startswith("sqlite+aiosqlite:///")

    def test_environment_overrides(self, clean_settings):
        clean_settings.setenv("APP_ENV", "Production")
        clean_settings.setenv("LOG_LEVEL", "debug")
        clean_settings.setenv("IMPORT_DEFAULT_MODE", "overwrite")
        clean_settings.setenv("IMPORT_CHANGED_BY", "ci")

        settings = Settings(_env_file=None)

        assert settings.is_production
        assert settings.log_level == "DEBUG"
        assert settings.importing.default_mode == ReconcileMode.OVERWRITE
        assert settings.importing.changed_by == "ci"

    def test_default_mode_ignores_case(self, clean_settings):
        clean_settings.setenv("IMPORT_DEFAULT_MODE", " OVERWRITE ")

        assert Settings(_env_file=None).importing.default_mode == ReconcileMode.OVERWRITE

    def test_invalid_default_mode(self, clean_settings):
        clean_settings.setenv("IMPORT_DEFAULT_MODE", "upsert")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_invalid_app_env(self, clean_settings):
        clean_settings.setenv("APP_ENV", "qa")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_invalid_log_level(self, clean_settings):
        clean_settings.setenv("LOG_LEVEL", "verbose")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self, clean_settings):
        assert get_settings() is get_settings()


class TestDatabaseUrl:
    """Tests for database URL normalization."""

    @pytest.mark.parametrize(
        "configured, expected",
        [
            ("postgres://u:p@db/rtm", "postgresql+asyncpg://u:p@db/rtm"),
            ("postgresql://u:p@db/rtm", "postgresql+asyncpg://u:p@db/rtm"),
            ("sqlite:////tmp/rtm.db", "sqlite+aiosqlite:////tmp/rtm.db"),
            ("sqlite+aiosqlite:////tmp/rtm.db", "sqlite+aiosqlite:////tmp/rtm.db"),
        ],
    )
    def test_driver_rewrite(self, clean_settings, configured, expected):
        clean_settings.setenv("DATABASE_URL", configured)

        assert get_database_url() == expected

    def test_home_is_expanded(self):
        url = _expand_sqlite_path("sqlite+aiosqlite:///~/.tracematrix/rtm.db")

        assert url == "sqlite+aiosqlite:///" + str(Path("~/.tracematrix/rtm.db").expanduser())

    def test_password_is_masked(self):
        assert _mask_password("postgresql+asyncpg://user:secret@db:5432/rtm") == (
            "postgresql+asyncpg://user:***@db:5432/rtm"
        )
        assert _mask_password("sqlite+aiosqlite:///rtm.db") == "sqlite+aiosqlite:///rtm.db"
