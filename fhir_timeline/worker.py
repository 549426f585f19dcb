"""Background import worker and job management.

Uploads are recorded as ``pending`` jobs synchronously and imported on a
thread pool, so the caller gets a job id back immediately and polls the job
store for progress.

Security Impact:
    - Each run writes only through the storage adapters, scoped to its user
    - Cancellation and deletion refuse to touch jobs in the wrong state

Architecture:
    - One ImportOrchestrator (and one ResourceTransformer) per run
    - Runs share only the storage adapters, which are thread-safe
    - Cancellation is cooperative: the cancel path writes ``cancelled`` and
      sets the run's ``threading.Event``; the run stops at its next check
    - Status writes are compare-and-set, so a run that already finished
      makes ``cancel`` raise and a cancelled job is never completed
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Optional

from fhir_timeline.adapters.storage.factory import StorageAdapters
from fhir_timeline.domain.enums import JobStatus
from fhir_timeline.domain.import_job import ImportJob, ImportResults, utc_now
from fhir_timeline.domain.ports import JobNotFoundError, JobStateError
from fhir_timeline.domain.services.clinical_classifier import ClassifierConfig, ClinicalTextClassifier
from fhir_timeline.domain.services.import_orchestrator import ImportOrchestrator
from fhir_timeline.domain.services.resource_transformer import ResourceTransformer
from fhir_timeline.infrastructure.logging_config import get_logger
from fhir_timeline.infrastructure.settings import settings


class ImportWorker:
    """Run archive imports in the background.

    Parameters:
        storage: Resource store, job store and user directory
        max_workers: Concurrent imports (defaults to ``settings.max_workers``)
        progress_update_interval: Records between progress writes
        posts_error_threshold_percent: Posts circuit breaker threshold
        classifier_config: Classifier rule tables (stock rules if None)

    Example Usage:
        ```python
        with ImportWorker(create_storage_adapters()) as worker:
            job_id = worker.submit(user_id, "export.zip", payload)
            job = worker.wait(job_id)
            print(job.status, job.results.total)
        ```
    """

    def __init__(
        self,
        storage: StorageAdapters,
        max_workers: Optional[int] = None,
        progress_update_interval: Optional[int] = None,
        posts_error_threshold_percent: Optional[float] = None,
        classifier_config: Optional[ClassifierConfig] = None,
    ):
        self.storage = storage
        self.progress_update_interval = progress_update_interval or settings.progress_update_interval
        self.posts_error_threshold_percent = (
            posts_error_threshold_percent
            if posts_error_threshold_percent is not None
            else settings.posts_error_threshold_percent
        )
        self.classifier_config = classifier_config
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.max_workers,
            thread_name_prefix="import-worker",
        )
        self._futures: dict[str, Future] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "ImportWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def submit(self, user_id: str, filename: str, payload: Any) -> str:
        """Record a pending job and schedule its import.

        Returns:
            str: The new job's id
        """
        job = ImportJob(user_id=user_id, filename=filename)
        self.storage.jobs.insert_job(job)

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[job.job_id] = cancel_event
            future = self._executor.submit(self._run, job.job_id, user_id, payload, cancel_event)
            self._futures[job.job_id] = future
        # Outside the lock: the callback runs inline when the future is already done
        future.add_done_callback(lambda _done, job_id=job.job_id: self._forget(job_id))

        log = get_logger(__name__, job_id=job.job_id, user_id=user_id)
        log.info(f"Queued import job {job.job_id} ({filename})")
        return job.job_id

    def _run(self, job_id: str, user_id: str, payload: Any, cancel_event: threading.Event) -> ImportResults:
        classifier = ClinicalTextClassifier(self.classifier_config)
        orchestrator = ImportOrchestrator(
            job_id=job_id,
            user_id=user_id,
            resource_store=self.storage.resources,
            job_store=self.storage.jobs,
            user_directory=self.storage.users,
            transformer=ResourceTransformer(user_id=user_id, classifier=classifier),
            progress_update_interval=self.progress_update_interval,
            posts_error_threshold_percent=self.posts_error_threshold_percent,
            cancel_event=cancel_event,
        )
        return orchestrator.run(payload)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
            self._cancel_events.pop(job_id, None)

    def status(self, job_id: str) -> ImportJob:
        """Get a job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = self.storage.jobs.find_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Import job not found: {job_id}", job_id=job_id)
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> ImportJob:
        """Block until the job's run finishes (or ``timeout`` elapses).

        A failed run does not raise here; its message is recorded on the job
        as ``failure_reason``.

        Returns:
            ImportJob: The job as stored after the wait
        """
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            wait_futures([future], timeout=timeout)
        return self.status(job_id)

    def cancel(self, job_id: str) -> ImportJob:
        """Cancel a pending or processing job.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job already reached a terminal status
        """
        job = self.status(job_id)
        if job.status.is_terminal:
            raise JobStateError(
                f"Cannot cancel job {job_id} with status {job.status.value}",
                job_id=job_id,
                status=job.status.value,
            )

        now = utc_now()
        cancelled = self.storage.jobs.update_job(
            job_id,
            {'status': JobStatus.CANCELLED, 'completed_at': now, 'updated_at': now},
            expected_status=(JobStatus.PENDING, JobStatus.PROCESSING),
        )

        with self._lock:
            cancel_event = self._cancel_events.get(job_id)
            future = self._futures.get(job_id)
        if cancel_event is not None:
            cancel_event.set()
        if future is not None:
            future.cancel()
        get_logger(__name__, job_id=job_id, user_id=job.user_id).info(f"Cancelled import job {job_id}")
        return cancelled

    def delete(self, job_id: str) -> None:
        """Delete a finished job.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is still pending or processing
        """
        job = self.status(job_id)
        if not job.status.is_terminal:
            raise JobStateError(
                f"Cannot delete job {job_id} while it is {job.status.value}",
                job_id=job_id,
                status=job.status.value,
            )

        self.storage.jobs.delete_job(job_id)
        with self._lock:
            self._futures.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
        get_logger(__name__, job_id=job_id, user_id=job.user_id).info(f"Deleted import job {job_id}")

    def jobs_for_user(self, user_id: str) -> list[ImportJob]:
        """List a user's jobs, newest first."""
        return self.storage.jobs.find_jobs_by_user(user_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and, by default, wait for running imports."""
        self._executor.shutdown(wait=wait)
