"""Storage adapters implementing the resource, job and user ports."""

from fhir_timeline.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_timeline.adapters.storage.factory import StorageAdapters, create_storage_adapters
from fhir_timeline.adapters.storage.memory_adapter import (
    InMemoryJobStore,
    InMemoryResourceStore,
    InMemoryUserDirectory,
)

__all__ = [
    "DuckDBAdapter",
    "InMemoryJobStore",
    "InMemoryResourceStore",
    "InMemoryUserDirectory",
    "StorageAdapters",
    "create_storage_adapters",
]
