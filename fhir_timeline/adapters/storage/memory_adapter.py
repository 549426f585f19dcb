"""In-memory storage adapters.

Dictionary-backed implementations of the resource storage, job store and user
directory ports. Used by the test suite and by the CLI when no database is
configured (``FT_DB_TYPE=memory``).

Documents are stored as JSON-compatible dicts (``model_dump(mode="json")``),
the same shape the DuckDB adapter persists, so both adapters answer queries
identically.
"""

import copy
import logging
from collections import defaultdict
from threading import Lock
from typing import Iterable, Optional

from fhir_timeline.domain.enums import JobStatus, ResourceType
from fhir_timeline.domain.import_job import ImportJob, JobError, utc_now
from fhir_timeline.domain.ports import (
    JobNotFoundError,
    JobStateError,
    JobStorePort,
    ResourceStoragePort,
    StorageError,
    UserAccount,
    UserDirectoryPort,
)
from fhir_timeline.domain.resources import ClinicalResource

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_LABEL = "facebook-import"


def stamp_resource(resource: ClinicalResource, user_id: str, source: str) -> dict:
    """Serialize a resource and stamp ownership and provenance metadata."""
    document = resource.model_dump(mode='json')
    now = utc_now().isoformat()
    document['user_id'] = user_id
    document['created_at'] = now
    document['updated_at'] = now
    document['meta'] = {'source': source, 'last_updated': now}
    return document


def apply_changes(document: dict, changes: dict) -> dict:
    """Return a copy of ``document`` with ``changes`` and fresh update stamps."""
    updated = copy.deepcopy(document)
    updated.update(copy.deepcopy(changes))
    now = utc_now().isoformat()
    updated['updated_at'] = now
    meta = dict(updated.get('meta') or {})
    meta['last_updated'] = now
    updated['meta'] = meta
    return updated


def matches(document: dict, selector: Optional[dict]) -> bool:
    return all(document.get(key) == value for key, value in (selector or {}).items())


def check_status(job: ImportJob, expected_status: Optional[Iterable[JobStatus]]) -> None:
    """Refuse a write when the job is not in one of the expected statuses."""
    if expected_status is None:
        return
    expected = tuple(expected_status)
    if job.status not in expected:
        raise JobStateError(
            f"Import job {job.job_id} is {job.status.value}, "
            f"expected {' or '.join(status.value for status in expected)}",
            job_id=job.job_id,
            status=job.status.value,
        )


def merge_job(job: ImportJob, fields: dict) -> ImportJob:
    """Apply a partial update to a job, re-validating the result."""
    unknown = set(fields) - set(ImportJob.model_fields)
    if unknown:
        raise StorageError(f"Unknown job fields: {sorted(unknown)}", operation="update_job")
    data = job.model_dump()
    data.update(fields)
    return ImportJob.model_validate(data)


class InMemoryResourceStore(ResourceStoragePort):
    """Thread-safe in-memory resource storage."""

    def __init__(self, source_label: str = DEFAULT_SOURCE_LABEL):
        self.source_label = source_label
        self._collections: dict[ResourceType, list[dict]] = defaultdict(list)
        self._lock = Lock()

    def insert(self, user_id: str, resource: ClinicalResource) -> str:
        if not user_id:
            raise StorageError("Cannot insert a resource without a user id", operation="insert")
        document = stamp_resource(resource, user_id, self.source_label)
        with self._lock:
            self._collections[resource.resource_type].append(document)
        logger.debug(f"Inserted {resource.resource_type.value}/{resource.id} for user {user_id}")
        return resource.id

    def update(self, user_id: str, resource_type: ResourceType, selector: dict, changes: dict) -> int:
        updated = 0
        with self._lock:
            documents = self._collections[resource_type]
            for index, document in enumerate(documents):
                if document.get('user_id') == user_id and matches(document, selector):
                    documents[index] = apply_changes(document, changes)
                    updated += 1
        return updated

    def find_one(self, user_id: str, resource_type: ResourceType, selector: Optional[dict] = None) -> Optional[dict]:
        with self._lock:
            for document in self._collections[resource_type]:
                if document.get('user_id') == user_id and matches(document, selector):
                    return copy.deepcopy(document)
        return None

    def find_by_user(self, user_id: str, resource_type: ResourceType) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._collections[resource_type]
                if document.get('user_id') == user_id
            ]

    def count_by_user(self, user_id: str, resource_type: ResourceType) -> int:
        with self._lock:
            return sum(1 for document in self._collections[resource_type] if document.get('user_id') == user_id)


class InMemoryJobStore(JobStorePort):
    """Thread-safe in-memory import job store."""

    def __init__(self):
        self._jobs: dict[str, ImportJob] = {}
        self._lock = Lock()

    def insert_job(self, job: ImportJob) -> str:
        with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
        return job.job_id

    def update_job(
        self,
        job_id: str,
        fields: dict,
        expected_status: Optional[Iterable[JobStatus]] = None
    ) -> ImportJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Import job not found: {job_id}", job_id=job_id)
            check_status(job, expected_status)
            updated = merge_job(job, fields)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def append_job_error(self, job_id: str, error: JobError) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Import job not found: {job_id}", job_id=job_id)
            self._jobs[job_id] = merge_job(job, {
                'errors': [*job.errors, error],
                'error_count': job.error_count + 1,
                'updated_at': utc_now(),
            })

    def find_job(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def find_jobs_by_user(self, user_id: str) -> list[ImportJob]:
        with self._lock:
            jobs = [job.model_copy(deep=True) for job in self._jobs.values() if job.user_id == user_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None


class InMemoryUserDirectory(UserDirectoryPort):
    """User directory backed by a dict of accounts."""

    def __init__(self, accounts: Optional[list[UserAccount]] = None):
        self._accounts = {account.user_id: account for account in accounts or []}

    def add_user(self, account: UserAccount) -> None:
        self._accounts[account.user_id] = account

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._accounts.get(user_id)
