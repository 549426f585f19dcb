"""Unit tests for application settings."""

import pytest

from fhir_timeline.infrastructure.settings import (
    DEFAULT_POSTS_ERROR_THRESHOLD_PERCENT,
    DEFAULT_PROGRESS_UPDATE_INTERVAL,
    DEFAULT_TEST_PARSE_SIZE,
    Settings,
)

SETTINGS_ENV = (
    "FT_APP_NAME", "FT_LOG_LEVEL", "FT_LOG_JSON", "FT_WORKING_DIRECTORY", "FT_TEST_PARSE_SIZE",
    "FT_PROGRESS_UPDATE_INTERVAL", "FT_POSTS_ERROR_THRESHOLD_PERCENT", "FT_SOURCE_LABEL",
    "FT_MAX_WORKERS", "FT_DB_TYPE", "FT_DB_PATH", "FT_CONFIG_FILE",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    """Test settings defaults and overrides."""

    def test_defaults(self, clean_env):
        """Test the pipeline defaults."""
        settings = Settings()

        assert settings.log_level == "INFO"
        assert settings.log_json is False
        assert settings.test_parse_size == DEFAULT_TEST_PARSE_SIZE == 100 * 1024 * 1024
        assert settings.progress_update_interval == DEFAULT_PROGRESS_UPDATE_INTERVAL == 50
        assert settings.posts_error_threshold_percent == DEFAULT_POSTS_ERROR_THRESHOLD_PERCENT == 10.0
        assert settings.source_label == "facebook-import"
        assert settings.working_directory.endswith("facebook-fhir-processing")
        assert settings.get_db_path() == ":memory:"

    def test_environment_overrides(self, clean_env, tmp_path):
        """Test FT_* variables override the defaults."""
        clean_env.setenv("FT_LOG_JSON", "TRUE")
        clean_env.setenv("FT_PROGRESS_UPDATE_INTERVAL", "5")
        clean_env.setenv("FT_POSTS_ERROR_THRESHOLD_PERCENT", "25")
        clean_env.setenv("FT_MAX_WORKERS", "4")
        clean_env.setenv("FT_DB_PATH", str(tmp_path / "timeline.duckdb"))

        settings = Settings()

        assert settings.log_json is True
        assert settings.progress_update_interval == 5
        assert settings.posts_error_threshold_percent == 25.0
        assert settings.max_workers == 4
        assert settings.get_db_path() == str(tmp_path / "timeline.duckdb")

    def test_memory_backend_has_no_path(self, clean_env):
        """Test get_db_path refuses non-DuckDB backends."""
        clean_env.setenv("FT_DB_TYPE", "memory")

        with pytest.raises(ValueError):
            Settings().get_db_path()
