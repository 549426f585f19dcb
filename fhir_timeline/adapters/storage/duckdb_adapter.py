"""DuckDB Storage Adapter.

This adapter implements the resource storage, job store and user directory
ports on top of DuckDB, an in-process database. Resources and jobs are kept as
JSON documents next to the columns queries filter on (resource type, owning
user, status).

Security Impact:
    - Every query is parameterised and filtered by the owning user id
    - Ownership and provenance metadata are stamped on insert
    - Multi-statement writes run in a transaction

Architecture:
    - Implements ResourceStoragePort, JobStorePort and UserDirectoryPort
    - Isolated from domain core - only depends on ports and models
    - A single lazily created connection guarded by a lock
"""

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Optional

import duckdb

from fhir_timeline.adapters.storage.memory_adapter import (
    DEFAULT_SOURCE_LABEL,
    apply_changes,
    check_status,
    matches,
    merge_job,
    stamp_resource,
)
from fhir_timeline.domain.enums import JobStatus, ResourceType
from fhir_timeline.domain.import_job import ImportJob, JobError, utc_now
from fhir_timeline.domain.ports import (
    JobNotFoundError,
    JobStateError,
    JobStorePort,
    ResourceStoragePort,
    Result,
    StorageError,
    UserAccount,
    UserDirectoryPort,
)
from fhir_timeline.domain.resources import ClinicalResource
from fhir_timeline.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)


class DuckDBAdapter(ResourceStoragePort, JobStorePort, UserDirectoryPort):
    """DuckDB implementation of the storage ports.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)
        source_label: Provenance label stamped into ``meta.source``

    Example Usage:
        ```python
        from fhir_timeline.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())
        result = adapter.initialize_schema()
        if result.is_success():
            adapter.upsert_user(UserAccount(user_id="u1", display_name="Sam"))
            adapter.insert("u1", patient_record)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
        source_label: str = DEFAULT_SOURCE_LABEL
    ):
        """Initialize DuckDB adapter.

        Security Impact:
            - Database path is validated before connecting
            - Connection is established lazily (on first operation)

        Note:
            If both db_config and db_path are provided, db_config takes precedence.
            If neither is provided, defaults to in-memory database.
        """
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self.source_label = source_label
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = Lock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create DuckDB connection."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Initialize database schema.

        Creates tables for:
        - resources: Clinical resources as JSON documents
        - import_jobs: Import job documents
        - users: Accounts known to the user directory

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()

            conn.execute("""
                CREATE TABLE IF NOT EXISTS resources (
                    resource_id VARCHAR NOT NULL,
                    resource_type VARCHAR NOT NULL,
                    user_id VARCHAR NOT NULL,
                    created_at VARCHAR NOT NULL,
                    updated_at VARCHAR NOT NULL,
                    document VARCHAR NOT NULL,
                    PRIMARY KEY (resource_type, resource_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS import_jobs (
                    job_id VARCHAR PRIMARY KEY,
                    user_id VARCHAR NOT NULL,
                    status VARCHAR NOT NULL,
                    created_at VARCHAR NOT NULL,
                    document VARCHAR NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id VARCHAR PRIMARY KEY,
                    display_name VARCHAR,
                    email VARCHAR,
                    phone VARCHAR
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_resources_user ON resources(user_id, resource_type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_import_jobs_user ON import_jobs(user_id)")

            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> duckdb.DuckDBPyConnection:
        if not self._initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StorageError(result.error, operation="initialize_schema")
        return self._get_connection()

    def _run(self, operation: str, fn: Any) -> Any:
        """Run ``fn(conn)`` under the adapter lock, wrapping driver errors."""
        with self._lock:
            conn = self._ensure_schema()
            try:
                return fn(conn)
            except (StorageError, JobNotFoundError, JobStateError):
                raise
            except Exception as e:
                logger.error(f"DuckDB {operation} failed: {str(e)}", exc_info=True)
                raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation) from e

    def _transaction(self, operation: str, fn: Any) -> Any:
        def in_transaction(conn: duckdb.DuckDBPyConnection) -> Any:
            conn.begin()
            try:
                value = fn(conn)
                conn.commit()
                return value
            except Exception:
                conn.rollback()
                raise
        return self._run(operation, in_transaction)

    # ------------------------------------------------------------------
    # ResourceStoragePort
    # ------------------------------------------------------------------

    def insert(self, user_id: str, resource: ClinicalResource) -> str:
        if not user_id:
            raise StorageError("Cannot insert a resource without a user id", operation="insert")
        document = stamp_resource(resource, user_id, self.source_label)

        def insert_row(conn: duckdb.DuckDBPyConnection) -> str:
            conn.execute(
                """
                INSERT INTO resources (resource_id, resource_type, user_id, created_at, updated_at, document)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    resource.id,
                    resource.resource_type.value,
                    user_id,
                    document['created_at'],
                    document['updated_at'],
                    json.dumps(document),
                ]
            )
            return resource.id

        return self._run("insert resource", insert_row)

    def _load_documents(self, conn: duckdb.DuckDBPyConnection, user_id: str, resource_type: ResourceType) -> list[dict]:
        rows = conn.execute(
            """
            SELECT document FROM resources
            WHERE user_id = ? AND resource_type = ?
            ORDER BY created_at, resource_id
            """,
            [user_id, resource_type.value]
        ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def update(self, user_id: str, resource_type: ResourceType, selector: dict, changes: dict) -> int:
        def update_rows(conn: duckdb.DuckDBPyConnection) -> int:
            updated = 0
            for document in self._load_documents(conn, user_id, resource_type):
                if not matches(document, selector):
                    continue
                new_document = apply_changes(document, changes)
                conn.execute(
                    """
                    UPDATE resources SET updated_at = ?, document = ?
                    WHERE resource_type = ? AND resource_id = ? AND user_id = ?
                    """,
                    [
                        new_document['updated_at'],
                        json.dumps(new_document),
                        resource_type.value,
                        document['id'],
                        user_id,
                    ]
                )
                updated += 1
            return updated

        return self._transaction("update resources", update_rows)

    def find_one(self, user_id: str, resource_type: ResourceType, selector: Optional[dict] = None) -> Optional[dict]:
        def find(conn: duckdb.DuckDBPyConnection) -> Optional[dict]:
            for document in self._load_documents(conn, user_id, resource_type):
                if matches(document, selector):
                    return document
            return None

        return self._run("find resource", find)

    def find_by_user(self, user_id: str, resource_type: ResourceType) -> list[dict]:
        return self._run(
            "find resources",
            lambda conn: self._load_documents(conn, user_id, resource_type)
        )

    def count_by_user(self, user_id: str, resource_type: ResourceType) -> int:
        def count(conn: duckdb.DuckDBPyConnection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) FROM resources WHERE user_id = ? AND resource_type = ?",
                [user_id, resource_type.value]
            ).fetchone()
            return int(row[0]) if row else 0

        return self._run("count resources", count)

    # ------------------------------------------------------------------
    # JobStorePort
    # ------------------------------------------------------------------

    def insert_job(self, job: ImportJob) -> str:
        def insert_row(conn: duckdb.DuckDBPyConnection) -> str:
            conn.execute(
                "INSERT INTO import_jobs (job_id, user_id, status, created_at, document) VALUES (?, ?, ?, ?, ?)",
                [job.job_id, job.user_id, job.status.value, job.created_at.isoformat(), job.model_dump_json()]
            )
            return job.job_id

        return self._run("insert job", insert_row)

    @staticmethod
    def _fetch_job(conn: duckdb.DuckDBPyConnection, job_id: str) -> Optional[ImportJob]:
        row = conn.execute("SELECT document FROM import_jobs WHERE job_id = ?", [job_id]).fetchone()
        return ImportJob.model_validate_json(row[0]) if row else None

    @staticmethod
    def _store_job(conn: duckdb.DuckDBPyConnection, job: ImportJob) -> None:
        conn.execute(
            "UPDATE import_jobs SET status = ?, document = ? WHERE job_id = ?",
            [job.status.value, job.model_dump_json(), job.job_id]
        )

    def update_job(
        self,
        job_id: str,
        fields: dict,
        expected_status: Optional[Iterable[JobStatus]] = None
    ) -> ImportJob:
        def update_row(conn: duckdb.DuckDBPyConnection) -> ImportJob:
            job = self._fetch_job(conn, job_id)
            if job is None:
                raise JobNotFoundError(f"Import job not found: {job_id}", job_id=job_id)
            check_status(job, expected_status)
            updated = merge_job(job, fields)
            self._store_job(conn, updated)
            return updated

        return self._transaction("update job", update_row)

    def append_job_error(self, job_id: str, error: JobError) -> None:
        def append(conn: duckdb.DuckDBPyConnection) -> None:
            job = self._fetch_job(conn, job_id)
            if job is None:
                raise JobNotFoundError(f"Import job not found: {job_id}", job_id=job_id)
            self._store_job(conn, merge_job(job, {
                'errors': [*job.errors, error],
                'error_count': job.error_count + 1,
                'updated_at': utc_now(),
            }))

        self._transaction("append job error", append)

    def find_job(self, job_id: str) -> Optional[ImportJob]:
        return self._run("find job", lambda conn: self._fetch_job(conn, job_id))

    def find_jobs_by_user(self, user_id: str) -> list[ImportJob]:
        def find(conn: duckdb.DuckDBPyConnection) -> list[ImportJob]:
            rows = conn.execute(
                "SELECT document FROM import_jobs WHERE user_id = ? ORDER BY created_at DESC",
                [user_id]
            ).fetchall()
            return [ImportJob.model_validate_json(row[0]) for row in rows]

        return self._run("find jobs", find)

    def delete_job(self, job_id: str) -> bool:
        def delete(conn: duckdb.DuckDBPyConnection) -> bool:
            existing = conn.execute("SELECT 1 FROM import_jobs WHERE job_id = ?", [job_id]).fetchone()
            if existing is None:
                return False
            conn.execute("DELETE FROM import_jobs WHERE job_id = ?", [job_id])
            return True

        return self._run("delete job", delete)

    # ------------------------------------------------------------------
    # UserDirectoryPort
    # ------------------------------------------------------------------

    def upsert_user(self, account: UserAccount) -> None:
        """Create or replace a user account."""
        self._run(
            "upsert user",
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO users (user_id, display_name, email, phone) VALUES (?, ?, ?, ?)",
                [account.user_id, account.display_name, account.email, account.phone]
            )
        )

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        def fetch(conn: duckdb.DuckDBPyConnection) -> Optional[UserAccount]:
            row = conn.execute(
                "SELECT user_id, display_name, email, phone FROM users WHERE user_id = ?",
                [user_id]
            ).fetchone()
            if row is None:
                return None
            return UserAccount(user_id=row[0], display_name=row[1], email=row[2], phone=row[3])

        return self._run("get user", fetch)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                    logger.info("DuckDB connection closed")
                except Exception as e:
                    logger.warning(f"Error closing DuckDB connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
