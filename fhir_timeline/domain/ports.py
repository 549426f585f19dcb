"""Domain Ports - Abstract Contracts for Storage and User Lookup.

This module defines the Port interfaces (abstract contracts) that Adapters must implement,
together with the Result type and the exception hierarchy used across the import pipeline.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Security Impact:
    - Every storage operation is scoped to a user id; adapters never cross users
    - Storage adapters stamp ownership and provenance metadata on insert
    - Type safety ensures only validated resources reach persistence

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - In-memory and DuckDB adapters implement these ports
    - Domain Core is isolated from persistence specifics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Iterable, Optional, TypeVar, Union

from pydantic import BaseModel

from fhir_timeline.domain.enums import JobStatus, ResourceType
from fhir_timeline.domain.import_job import ImportJob, JobError
from fhir_timeline.domain.resources import ClinicalResource

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    The import orchestrator converts per-record outcomes into Results so the
    posts CircuitBreaker can monitor failure rates without relying on
    exception handling.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (TransformationError, StorageError, etc.)
        error_details: Additional error context (phase, record, etc.)

    Example:
        ```python
        result = Result.success_result(resource_id)
        if result.is_success():
            use(result.value)

        result = Result.failure_result(
            TransformationError("Invalid timestamp"),
            error_details={"phase": "posts"}
        )
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (defaults to the exception class name)
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class TimelineImportError(Exception):
    """Base exception for all import-related errors."""
    pass


class SourceNotFoundError(TimelineImportError):
    """Raised when an archive path cannot be found or accessed.

    Attributes:
        source: The path that was not found
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class UnsupportedSourceError(TimelineImportError):
    """Raised when an archive source is neither a zip, a directory nor a JSON file.

    Attributes:
        source: The source identifier that is unsupported
        adapter: The adapter that cannot handle the source
    """

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.adapter = adapter


class TransformationError(TimelineImportError):
    """Raised when a single raw record cannot be transformed into a resource.

    Attributes:
        source: The entity type being transformed (post, friend, ...)
        raw_data: The raw record that failed transformation
    """

    def __init__(self, message: str, source: Optional[str] = None, raw_data: Optional[Any] = None):
        super().__init__(message)
        self.source = source
        self.raw_data = raw_data


class NoValidDataError(TimelineImportError):
    """Raised when an archive payload contains nothing importable."""
    pass


class UserNotFoundError(TimelineImportError):
    """Raised when the user directory has no account for the importing user."""

    def __init__(self, message: str, user_id: Optional[str] = None):
        super().__init__(message)
        self.user_id = user_id


class StorageError(TimelineImportError):
    """Raised when a storage adapter operation fails.

    Attributes:
        operation: Storage operation that failed (insert, update, connect, ...)
        details: Additional error context (never contains credentials)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class JobNotFoundError(TimelineImportError):
    """Raised when an import job id is unknown to the job store."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class JobStateError(TimelineImportError):
    """Raised when a job management operation is invalid for the job's status."""

    def __init__(self, message: str, job_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.status = status


# ============================================================================
# Collaborator Ports
# ============================================================================

class UserAccount(BaseModel):
    """Account details supplied by the user directory."""

    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class UserDirectoryPort(ABC):
    """Lookup of the importing user's account."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        """Return the account for ``user_id`` or None when unknown."""
        pass


class ResourceStoragePort(ABC):
    """Abstract contract for persisting clinical resources.

    One logical collection per ``ResourceType``. Every operation is scoped to
    the owning user: an adapter must never read or write another user's
    resources.

    Security Impact:
        - ``insert`` stamps ``user_id``, ``created_at``, ``updated_at`` and
          ``meta`` (source label and last-updated time)
        - ``update`` only touches documents owned by the given user

    Example Usage:
        ```python
        resource_id = store.insert(user_id, patient_record)
        store.update(user_id, ResourceType.PATIENT, {"id": resource_id}, {"active": False})
        profile = store.find_one(user_id, ResourceType.PATIENT)
        ```
    """

    @abstractmethod
    def insert(self, user_id: str, resource: ClinicalResource) -> str:
        """Insert a resource owned by ``user_id``.

        Parameters:
            user_id: Owning user
            resource: Resource model to persist

        Returns:
            str: Identifier of the stored resource

        Raises:
            StorageError: If the resource cannot be persisted
        """
        pass

    @abstractmethod
    def update(
        self,
        user_id: str,
        resource_type: ResourceType,
        selector: dict,
        changes: dict
    ) -> int:
        """Apply ``changes`` to the user's resources matching ``selector``.

        Parameters:
            user_id: Owning user
            resource_type: Collection to update
            selector: Top-level field equality filter (e.g. ``{"id": ...}``)
            changes: JSON-compatible field values to set

        Returns:
            int: Number of updated resources
        """
        pass

    @abstractmethod
    def find_one(self, user_id: str, resource_type: ResourceType, selector: Optional[dict] = None) -> Optional[dict]:
        """Return the first of the user's resources matching ``selector``."""
        pass

    @abstractmethod
    def find_by_user(self, user_id: str, resource_type: ResourceType) -> list[dict]:
        """Return all of the user's resources of a type."""
        pass

    @abstractmethod
    def count_by_user(self, user_id: str, resource_type: ResourceType) -> int:
        """Count the user's resources of a type."""
        pass


class JobStorePort(ABC):
    """Abstract contract for import job persistence."""

    @abstractmethod
    def insert_job(self, job: ImportJob) -> str:
        """Persist a new job and return its id."""
        pass

    @abstractmethod
    def update_job(
        self,
        job_id: str,
        fields: dict,
        expected_status: Optional[Iterable[JobStatus]] = None
    ) -> ImportJob:
        """Apply a partial update to a job.

        The status check and the write are atomic, so concurrent writers
        (the import run and the cancel path) cannot move a job backwards.

        Parameters:
            job_id: Job to update
            fields: ``ImportJob`` field names mapped to new values
            expected_status: Statuses the job must currently have (any if None)

        Returns:
            ImportJob: The updated job

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job's status is not one of ``expected_status``
        """
        pass

    @abstractmethod
    def append_job_error(self, job_id: str, error: JobError) -> None:
        """Append an error entry and increment the job's error count."""
        pass

    @abstractmethod
    def find_job(self, job_id: str) -> Optional[ImportJob]:
        """Return the job or None when unknown."""
        pass

    @abstractmethod
    def find_jobs_by_user(self, user_id: str) -> list[ImportJob]:
        """Return the user's jobs, most recent first."""
        pass

    @abstractmethod
    def delete_job(self, job_id: str) -> bool:
        """Delete a job, returning True when it existed."""
        pass
