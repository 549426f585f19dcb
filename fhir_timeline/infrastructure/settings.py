"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.
"""

import os
import tempfile
from pathlib import Path
from typing import Optional

from fhir_timeline import __version__
from fhir_timeline.infrastructure.config_manager import ConfigManager, DatabaseConfig

# Application metadata
APP_NAME = "FHIR Timeline"
APP_VERSION = __version__

# Recommended total size of files for an initial test import (100MB)
DEFAULT_TEST_PARSE_SIZE = 100 * 1024 * 1024

# Records between periodic progress writes within a phase
DEFAULT_PROGRESS_UPDATE_INTERVAL = 50

# Posts phase aborts once failures exceed this share of the phase's records
DEFAULT_POSTS_ERROR_THRESHOLD_PERCENT = 10.0

DEFAULT_WORKING_DIRECTORY = str(Path(tempfile.gettempdir()) / "facebook-fhir-processing")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    """Application settings loaded from configuration manager and environment.

    All values can be overridden with ``FT_*`` environment variables.
    """

    def __init__(self):
        """Initialize settings from environment."""
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("FT_APP_NAME", APP_NAME)
        self.log_level = os.getenv("FT_LOG_LEVEL", "INFO")
        self.log_json = _env_bool("FT_LOG_JSON", "false")

        # Archive handling
        self.working_directory = os.getenv("FT_WORKING_DIRECTORY", DEFAULT_WORKING_DIRECTORY)
        self.test_parse_size = int(os.getenv("FT_TEST_PARSE_SIZE", str(DEFAULT_TEST_PARSE_SIZE)))

        # Import pipeline
        self.progress_update_interval = int(
            os.getenv("FT_PROGRESS_UPDATE_INTERVAL", str(DEFAULT_PROGRESS_UPDATE_INTERVAL))
        )
        self.posts_error_threshold_percent = float(
            os.getenv("FT_POSTS_ERROR_THRESHOLD_PERCENT", str(DEFAULT_POSTS_ERROR_THRESHOLD_PERCENT))
        )
        self.source_label = os.getenv("FT_SOURCE_LABEL", "facebook-import")
        self.max_workers = int(os.getenv("FT_MAX_WORKERS", "2"))

    @property
    def config_manager(self) -> ConfigManager:
        """Get configuration manager instance (loaded lazily)."""
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    def get_db_path(self) -> str:
        """Get database path for DuckDB.

        Returns:
            Database path or ':memory:' for in-memory database
        """
        if self.db_config.db_type == "duckdb":
            return self.db_config.db_path or ":memory:"
        raise ValueError(f"Database type '{self.db_config.db_type}' does not use db_path")


# Global settings instance
settings = Settings()
