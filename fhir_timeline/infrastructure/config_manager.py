"""Configuration Manager.

This module loads storage and classifier configuration from environment
variables or a JSON file.

Security Impact:
    - Configuration files with permissive modes are reported
    - Configuration is validated (Pydantic) before use

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from fhir_timeline.domain.services.clinical_classifier import ClassifierConfig

logger = logging.getLogger(__name__)

SUPPORTED_DB_TYPES = ("duckdb", "memory")


class DatabaseConfig(BaseModel):
    """Storage configuration.

    Parameters:
        db_type: Storage backend ('duckdb' or 'memory')
        db_path: Path to the DuckDB file (':memory:' or None for in-memory)
    """

    db_type: str = Field(default="duckdb", description="Storage backend (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        if v.lower() not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported database type: {v}. Supported: {list(SUPPORTED_DB_TYPES)}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the database directory exists (the file may not yet)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)


class ConfigManager:
    """Configuration manager for storage and classifier settings.

    Example Usage:
        ```python
        # Load from environment variables (and a project .env file)
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        classifier_config = config.get_classifier_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with optional ``database``
                and ``nlp`` sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._classifier_config: Optional[ClassifierConfig] = None

    @classmethod
    def from_environment(cls) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - FT_DB_TYPE: Storage backend (duckdb, memory)
            - FT_DB_PATH: Path to database file (for DuckDB)
            - FT_CONFIG_FILE: Optional JSON file providing an ``nlp`` section

        Returns:
            ConfigManager instance

        Note:
            A ``.env`` file in the project root is loaded first when present.
        """
        env_path = Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        config_data: Dict[str, Any] = {
            "database": {
                "db_type": os.getenv("FT_DB_TYPE", "duckdb"),
                "db_path": os.getenv("FT_DB_PATH"),
            }
        }

        config_file = os.getenv("FT_CONFIG_FILE")
        if config_file:
            file_data = cls.from_file(config_file)._config_data
            if "nlp" in file_data:
                config_data["nlp"] = file_data["nlp"]

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get database configuration (validated, cached)."""
        if self._database_config is None:
            db_config_data = dict(self._config_data.get("database") or {})
            self._database_config = DatabaseConfig(**db_config_data)
        return self._database_config

    def get_classifier_config(self) -> ClassifierConfig:
        """Get classifier rules, overriding defaults with the ``nlp`` section."""
        if self._classifier_config is None:
            nlp_data = self._config_data.get("nlp") or {}
            self._classifier_config = ClassifierConfig(**nlp_data)
        return self._classifier_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "database.db_path")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Load database configuration from the environment.

    Defaults to an in-memory DuckDB database if nothing is configured.
    """
    return ConfigManager.from_environment().get_database_config()
