"""Storage adapter selection from configuration."""

import logging
from dataclasses import dataclass
from typing import Optional

from fhir_timeline.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_timeline.adapters.storage.memory_adapter import (
    InMemoryJobStore,
    InMemoryResourceStore,
    InMemoryUserDirectory,
)
from fhir_timeline.domain.ports import (
    JobStorePort,
    ResourceStoragePort,
    StorageError,
    UserAccount,
    UserDirectoryPort,
)
from fhir_timeline.infrastructure.config_manager import DatabaseConfig, get_database_config

logger = logging.getLogger(__name__)


@dataclass
class StorageAdapters:
    """The three storage ports an import needs."""

    resources: ResourceStoragePort
    jobs: JobStorePort
    users: UserDirectoryPort

    def register_user(self, account: UserAccount) -> None:
        """Make an account known to the user directory."""
        if isinstance(self.users, DuckDBAdapter):
            self.users.upsert_user(account)
        elif isinstance(self.users, InMemoryUserDirectory):
            self.users.add_user(account)
        else:
            raise StorageError(
                f"User directory {type(self.users).__name__} does not accept registrations",
                operation="register_user"
            )

    def close(self) -> None:
        if isinstance(self.resources, DuckDBAdapter):
            self.resources.close()


def create_storage_adapters(
    db_config: Optional[DatabaseConfig] = None,
    source_label: str = "facebook-import"
) -> StorageAdapters:
    """Create storage adapters based on configuration.

    Parameters:
        db_config: Storage configuration (loaded from the environment if None)
        source_label: Provenance label stamped on inserted resources

    Returns:
        StorageAdapters: Resource store, job store and user directory

    Raises:
        StorageError: If the DuckDB schema cannot be initialized
    """
    db_config = db_config or get_database_config()

    if db_config.db_type == "memory":
        logger.info("Using in-memory storage")
        return StorageAdapters(
            resources=InMemoryResourceStore(source_label=source_label),
            jobs=InMemoryJobStore(),
            users=InMemoryUserDirectory(),
        )

    adapter = DuckDBAdapter(db_config=db_config, source_label=source_label)
    result = adapter.initialize_schema()
    if result.is_failure():
        raise StorageError(result.error, operation="initialize_schema")
    logger.info(f"Using DuckDB storage at {adapter.db_path}")
    return StorageAdapters(resources=adapter, jobs=adapter, users=adapter)
