"""Tests for the background import worker."""

import pytest

from fhir_timeline.adapters.storage.factory import StorageAdapters, create_storage_adapters
from fhir_timeline.adapters.storage.memory_adapter import (
    InMemoryJobStore,
    InMemoryResourceStore,
    InMemoryUserDirectory,
)
from fhir_timeline.domain.enums import JobStatus
from fhir_timeline.domain.import_job import ImportJob
from fhir_timeline.domain.ports import JobNotFoundError, JobStateError, UserAccount
from fhir_timeline.infrastructure.config_manager import DatabaseConfig
from fhir_timeline.worker import ImportWorker

PAYLOAD = {
    "posts": [
        {"timestamp": 1700000000, "data": [{"post": "I have a terrible headache today"}]},
        {"timestamp": 1700000100, "data": [{"post": "Back to work"}]},
    ],
    "friends": [{"name": "Alex Rivera", "timestamp": 1609459200}],
}



class InterleavingJobStore(InMemoryJobStore):
    """Job store that runs a hook just before a chosen status is written.

    Every status that actually lands is recorded in ``history``.
    """

    def __init__(self, trigger):
        super().__init__()
        self.trigger = trigger
        self.hook = None
        self.history = []

    def update_job(self, job_id, fields, expected_status=None):
        if fields.get('status') == self.trigger and self.hook is not None:
            hook, self.hook = self.hook, None
            hook(job_id)
        job = super().update_job(job_id, fields, expected_status=expected_status)
        if 'status' in fields:
            self.history.append(job.status)
        return job


def interleaved_worker(trigger):
    jobs = InterleavingJobStore(trigger)
    storage = StorageAdapters(
        resources=InMemoryResourceStore(),
        jobs=jobs,
        users=InMemoryUserDirectory([UserAccount(user_id="u1")]),
    )
    worker = ImportWorker(storage, max_workers=1, progress_update_interval=1)
    jobs.hook = worker.cancel
    return worker, jobs


@pytest.fixture
def storage():
    storage = create_storage_adapters(DatabaseConfig(db_type="memory"))
    storage.register_user(UserAccount(user_id="u1", display_name="Jane Doe"))
    return storage


@pytest.fixture
def worker(storage):
    worker = ImportWorker(storage, max_workers=1, progress_update_interval=1)
    yield worker
    worker.shutdown()


class TestImportWorker:
    """Test submitting and managing import jobs."""

    def test_submit_and_wait(self, worker):
        """Test a submitted import runs to completion."""
        job_id = worker.submit("u1", "export.zip", PAYLOAD)

        job = worker.wait(job_id, timeout=30)

        assert job.status == JobStatus.COMPLETED
        assert job.filename == "export.zip"
        assert job.progress == 100
        assert job.results.patients == 1
        assert job.results.clinical_impressions == 2
        assert job.results.persons == 1
        assert job.results.care_teams == 1
        assert [j.job_id for j in worker.jobs_for_user("u1")] == [job_id]

    def test_failed_run_is_recorded(self, worker):
        """Test a failing run is reported through the job, not raised."""
        job_id = worker.submit("u1", "empty.zip", {})

        job = worker.wait(job_id, timeout=30)

        assert job.status == JobStatus.FAILED
        assert job.failure_reason == "No valid data found in archive"

    def test_unknown_user_fails(self, worker):
        """Test importing for an unregistered user fails the job."""
        job_id = worker.submit("nobody", "export.zip", PAYLOAD)

        job = worker.wait(job_id, timeout=30)

        assert job.status == JobStatus.FAILED

    def test_status_missing_job(self, worker):
        """Test looking up a missing job."""
        with pytest.raises(JobNotFoundError):
            worker.status("missing")

    def test_cancel_terminal_job(self, worker):
        """Test a finished job cannot be cancelled."""
        job_id = worker.submit("u1", "export.zip", PAYLOAD)
        worker.wait(job_id, timeout=30)

        with pytest.raises(JobStateError):
            worker.cancel(job_id)

    def test_cancel_then_delete(self, worker, storage):
        """Test a running job must be cancelled before it can be deleted."""
        job = ImportJob(user_id="u1", status=JobStatus.PROCESSING)
        storage.jobs.insert_job(job)

        with pytest.raises(JobStateError):
            worker.delete(job.job_id)

        cancelled = worker.cancel(job.job_id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.completed_at is not None

        worker.delete(job.job_id)
        assert storage.jobs.find_job(job.job_id) is None

    def test_delete_finished_job(self, worker, storage):
        """Test deleting a completed job."""
        job_id = worker.submit("u1", "export.zip", PAYLOAD)
        worker.wait(job_id, timeout=30)

        worker.delete(job_id)

        with pytest.raises(JobNotFoundError):
            worker.status(job_id)

    def test_context_manager_shuts_down(self, storage):
        """Test leaving the context waits for queued imports."""
        with ImportWorker(storage, max_workers=1) as worker:
            job_id = worker.submit("u1", "export.zip", PAYLOAD)

        assert storage.jobs.find_job(job_id).status == JobStatus.COMPLETED

    def test_finished_worker_forgets_runs(self, worker):
        """Test finished runs are dropped from the worker's bookkeeping."""
        worker.submit("u1", "export.zip", PAYLOAD)
        worker.submit("u1", "empty.zip", {})

        worker.shutdown()

        assert worker._futures == {}
        assert worker._cancel_events == {}


class TestCancelRaces:
    """Test cancel landing between a run's status check and its write."""

    def test_cancel_just_before_completion(self):
        """Test a run does not overwrite a cancel that lands as it completes."""
        worker, jobs = interleaved_worker(JobStatus.COMPLETED)
        with worker:
            job_id = worker.submit("u1", "export.zip", PAYLOAD)
            job = worker.wait(job_id, timeout=30)

        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert jobs.history == [JobStatus.PROCESSING, JobStatus.CANCELLED]

    def test_cancel_just_before_start(self):
        """Test a run does not move a job cancelled as it starts back to processing."""
        worker, jobs = interleaved_worker(JobStatus.PROCESSING)
        with worker:
            job_id = worker.submit("u1", "export.zip", PAYLOAD)
            job = worker.wait(job_id, timeout=30)

        assert job.status == JobStatus.CANCELLED
        assert job.started_at is None
        assert job.results is None
        assert jobs.history == [JobStatus.CANCELLED]
