"""Import Job Orchestrator.

Drives one archive import from ``pending`` to ``completed`` or ``failed``:

    profile (10%) -> friends (30%) -> posts (50%) -> media (70%) -> messages (90%) -> completed (100%)

Security Impact:
    - Every resource is written through the storage port scoped to the job's user
    - A malformed record is logged against the job and never aborts the run
    - The posts phase is protected by a CircuitBreaker so a corrupted export
      cannot flood the job with thousands of errors

Architecture:
    - Pure domain service; storage, job persistence and user lookup are ports
    - Mutable run counters live in an explicit ``ImportRunContext``
    - Cancellation is cooperative through a ``threading.Event``
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from fhir_timeline.domain.enums import ImportPhase, JobStatus, ResourceType
from fhir_timeline.domain.guardrails import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
)
from fhir_timeline.domain.import_job import ImportResults, JobError, utc_now
from fhir_timeline.domain.ports import (
    JobNotFoundError,
    JobStateError,
    JobStorePort,
    NoValidDataError,
    ResourceStoragePort,
    Result,
    UserDirectoryPort,
    UserNotFoundError,
)
from fhir_timeline.domain.resources import CareTeamParticipant, ClinicalResource
from fhir_timeline.domain.services.content_extractor import ContentExtractor, ExtractedContent
from fhir_timeline.domain.services.resource_transformer import ResourceTransformer

logger = logging.getLogger(__name__)

PHASE_MILESTONES = {
    ImportPhase.PROFILE: 10,
    ImportPhase.FRIENDS: 30,
    ImportPhase.POSTS: 50,
    ImportPhase.MEDIA: 70,
    ImportPhase.MESSAGES: 90,
    ImportPhase.FALLBACK: 90,
    ImportPhase.COMPLETED: 100,
}

NO_VALID_DATA_MESSAGE = "No valid data found in archive"

# Statuses a job may have when the run writes to it
RUNNING_STATUSES = (JobStatus.PROCESSING,)
STARTABLE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)

_RESULT_COUNTERS = {
    ResourceType.PATIENT: 'patients',
    ResourceType.COMMUNICATION: 'communications',
    ResourceType.CLINICAL_IMPRESSION: 'clinical_impressions',
    ResourceType.MEDIA: 'media',
    ResourceType.PERSON: 'persons',
    ResourceType.CARE_TEAM: 'care_teams',
}


@dataclass
class ImportRunContext:
    """Mutable state of one import run."""

    job_id: str
    user_id: str
    total_records: int = 0
    processed_records: int = 0
    error_count: int = 0
    progress: int = 0
    current_phase: ImportPhase = ImportPhase.INITIALIZING
    results: ImportResults = field(default_factory=ImportResults)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def count(self, resource: ClinicalResource) -> None:
        counter = _RESULT_COUNTERS[resource.resource_type]
        setattr(self.results, counter, getattr(self.results, counter) + 1)


class ImportOrchestrator:
    """Run an archive import for one job.

    Parameters:
        job_id: Job created by the upload path (status ``pending``)
        user_id: Importing user
        resource_store: Resource storage port
        job_store: Job store port
        user_directory: User lookup port
        transformer: Resource transformer (one per run; created if None)
        extractor: Content extractor (default rules if None)
        progress_update_interval: Records between periodic progress writes
        posts_error_threshold_percent: Posts circuit breaker threshold
        cancel_event: Shared flag set by the external cancel path

    Example Usage:
        ```python
        orchestrator = ImportOrchestrator(
            job_id=job.job_id,
            user_id=job.user_id,
            resource_store=store,
            job_store=jobs,
            user_directory=users,
        )
        results = orchestrator.run(payload)
        ```
    """

    def __init__(
        self,
        job_id: str,
        user_id: str,
        resource_store: ResourceStoragePort,
        job_store: JobStorePort,
        user_directory: UserDirectoryPort,
        transformer: Optional[ResourceTransformer] = None,
        extractor: Optional[ContentExtractor] = None,
        progress_update_interval: int = 50,
        posts_error_threshold_percent: float = 10.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.resource_store = resource_store
        self.job_store = job_store
        self.user_directory = user_directory
        self.transformer = transformer or ResourceTransformer(user_id=user_id)
        self.extractor = extractor or ContentExtractor()
        self.progress_update_interval = max(1, progress_update_interval)
        self.posts_error_threshold_percent = posts_error_threshold_percent
        self.context = ImportRunContext(
            job_id=job_id,
            user_id=user_id,
            cancel_event=cancel_event or threading.Event(),
        )

    def cancel(self) -> None:
        """Request cooperative cancellation of the run."""
        self.context.cancel_event.set()

    def run(self, payload: Any) -> ImportResults:
        """Import a parsed archive payload.

        Parameters:
            payload: Parsed archive JSON (dict or list)

        Returns:
            ImportResults: Counts of created resources. When the run is
            cancelled, the counts produced so far (the job status is left to
            the cancel path).

        Raises:
            NoValidDataError: If the payload is empty (job marked failed)
            UserNotFoundError: If the user has no account (job marked failed)
            Exception: Anything else escaping the run (job marked failed)
        """
        ctx = self.context
        logger.info(f"Starting import job {ctx.job_id} for user {ctx.user_id}")

        try:
            self._mark_processing()
            if ctx.cancelled:
                logger.info(f"Import job {ctx.job_id} cancelled before it started")
                return ctx.results

            if not payload or not isinstance(payload, (dict, list)):
                raise NoValidDataError(NO_VALID_DATA_MESSAGE)

            content = self.extractor.extract(payload)
            ctx.total_records = 1 + content.record_count + (1 if content.experiences else 0)
            if not self._write_job({'total_records': ctx.total_records}):
                return ctx.results

            self._process_profile(content)

            if content.has_entity_data():
                self._run_entity_phases(content)
            else:
                logger.warning(
                    f"Job {ctx.job_id}: no recognized records in archive, creating fallback records"
                )
                self._process_fallback()

            if ctx.cancelled:
                logger.info(f"Import job {ctx.job_id} cancelled after {ctx.processed_records} records")
                return ctx.results

            if not self._mark_completed():
                logger.info(f"Import job {ctx.job_id} was cancelled before it could complete")
                return ctx.results

            logger.info(
                f"Import job {ctx.job_id} completed: {ctx.processed_records}/{ctx.total_records} records, "
                f"{ctx.error_count} errors, {ctx.results.total} resources created"
            )
            return ctx.results

        except Exception as e:
            logger.error(f"Import job {ctx.job_id} failed: {str(e)}", exc_info=True)
            # A cancelled job already carries its terminal status
            if not ctx.cancelled:
                self._mark_failed(str(e))
            raise

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_entity_phases(self, content: ExtractedContent) -> None:
        phases: list[tuple[ImportPhase, list, Callable[[list], None]]] = [
            (ImportPhase.FRIENDS, content.friends, self._process_friends),
            (ImportPhase.POSTS, content.posts, self._process_posts),
            (ImportPhase.MEDIA, content.media, self._process_media),
            (ImportPhase.MESSAGES, content.messages, self._process_messages),
        ]
        for phase, records, handler in phases:
            if self.context.cancelled:
                return
            if not records:
                continue
            logger.info(f"Job {self.context.job_id}: {phase.value} phase, {len(records)} records")
            self.context.current_phase = phase
            if not self._write_job({'current_phase': phase}):
                return
            handler(records)
            if self.context.cancelled:
                return
            self._update_progress(PHASE_MILESTONES[phase], phase)

    def _process_profile(self, content: ExtractedContent) -> None:
        """Create or update the user's profile. Failures here are fatal."""
        ctx = self.context
        ctx.current_phase = ImportPhase.PROFILE

        account = self.user_directory.get_user(ctx.user_id)
        if account is None:
            raise UserNotFoundError(f"User not found: {ctx.user_id}", user_id=ctx.user_id)

        profile = self.transformer.build_profile(account, content.experiences)
        existing = self.resource_store.find_one(ctx.user_id, ResourceType.PATIENT)
        if existing:
            self.resource_store.update(
                ctx.user_id,
                ResourceType.PATIENT,
                {'id': existing['id']},
                self.transformer.profile_changes(profile, existing),
            )
            self.transformer.bind_patient(existing['id'])
            logger.info(f"Updated profile {existing['id']} for user {ctx.user_id}")
        else:
            patient_id = self.resource_store.insert(ctx.user_id, profile)
            self.transformer.bind_patient(patient_id)
            ctx.count(profile)
            logger.info(f"Created profile {patient_id} for user {ctx.user_id}")

        ctx.processed_records += 2 if content.experiences else 1
        self._update_progress(PHASE_MILESTONES[ImportPhase.PROFILE], ImportPhase.PROFILE)

    def _process_friends(self, friends: list) -> None:
        participants: list[CareTeamParticipant] = []

        def handle(friend: Any) -> None:
            transformed = self.transformer.transform_friend(friend)
            if transformed is None:
                return
            self._persist(transformed.person)
            participants.append(transformed.participant)

        self._process_records(ImportPhase.FRIENDS, friends, handle, check_cancel=True)

        care_team = self.transformer.build_care_team(participants)
        if care_team is not None:
            self._persist(care_team)
            logger.info(
                f"Job {self.context.job_id}: support network created with {len(participants)} contacts"
            )

    def _process_posts(self, posts: list) -> None:
        breaker = CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold_percent=self.posts_error_threshold_percent,
                abort_on_open=True,
            ),
            total_records=len(posts),
        )

        def handle(post: Any) -> None:
            transformed = self.transformer.transform_post(post)
            if transformed is None:
                return
            for media in transformed.media:
                self._persist(media)
            self._persist(transformed.impression)

        self._process_records(ImportPhase.POSTS, posts, handle, check_cancel=True, breaker=breaker)

    def _process_media(self, media_items: list) -> None:
        def handle(item: Any) -> None:
            self._persist(self.transformer.transform_media(item))

        self._process_records(ImportPhase.MEDIA, media_items, handle)

    def _process_messages(self, messages: list) -> None:
        def handle(message: Any) -> None:
            communication = self.transformer.transform_message(message)
            if communication is not None:
                self._persist(communication)

        self._process_records(ImportPhase.MESSAGES, messages, handle)

    def _process_fallback(self) -> None:
        ctx = self.context
        ctx.current_phase = ImportPhase.FALLBACK
        records = self.transformer.build_fallback_records()
        ctx.total_records += len(records)
        if not self._write_job({'current_phase': ImportPhase.FALLBACK, 'total_records': ctx.total_records}):
            return

        for resource in records:
            self._persist(resource)
            ctx.processed_records += 1
        self._update_progress(PHASE_MILESTONES[ImportPhase.FALLBACK], ImportPhase.FALLBACK)

    # ------------------------------------------------------------------
    # Record loop
    # ------------------------------------------------------------------

    def _process_records(
        self,
        phase: ImportPhase,
        records: list,
        handle: Callable[[Any], None],
        check_cancel: bool = False,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Process a phase's records one by one.

        Per-record failures are recorded on the job and processing continues;
        ``processed_records`` advances whatever the outcome.
        """
        ctx = self.context
        start_progress = ctx.progress
        milestone = PHASE_MILESTONES[phase]

        for index, record in enumerate(records, start=1):
            if check_cancel and ctx.cancelled:
                logger.info(f"Job {ctx.job_id}: cancellation requested during {phase.value} phase")
                return

            result = self._process_record(phase, record, handle)
            ctx.processed_records += 1

            if index % self.progress_update_interval == 0 and index < len(records):
                span = milestone - start_progress
                self._update_progress(start_progress + (span * index) // len(records), phase)

            if breaker is None:
                continue
            try:
                breaker.record_result(result)
            except CircuitBreakerOpenError as e:
                logger.error(f"Job {ctx.job_id}: aborting {phase.value} phase: {str(e)}")
                self._log_error(
                    f"{phase.value.capitalize()} phase aborted: {str(e)}",
                    phase,
                    {
                        'failures': e.failures,
                        'records_processed': e.records_processed,
                        'failure_rate': e.failure_rate,
                        'threshold': e.threshold,
                    },
                )
                return

    def _process_record(self, phase: ImportPhase, record: Any, handle: Callable[[Any], None]) -> Result[None]:
        try:
            handle(record)
            return Result.success_result(None)
        except Exception as e:
            logger.warning(f"Job {self.context.job_id}: failed to process {phase.value} record: {str(e)}")
            self._log_error(str(e), phase, record)
            return Result.failure_result(e, error_details={'phase': phase.value})

    def _persist(self, resource: ClinicalResource) -> str:
        resource_id = self.resource_store.insert(self.context.user_id, resource)
        self.context.count(resource)
        return resource_id

    # ------------------------------------------------------------------
    # Job state
    # ------------------------------------------------------------------

    def _write_job(self, fields: dict, expected_status: tuple = RUNNING_STATUSES) -> bool:
        """Write job fields unless the job has left ``expected_status``.

        A refused write means the cancel path moved the job on; the run's
        cancel flag is raised so it stops at its next check.

        Returns:
            bool: True if the write was applied
        """
        fields = dict(fields)
        fields['updated_at'] = utc_now()
        try:
            self.job_store.update_job(self.context.job_id, fields, expected_status=expected_status)
        except JobStateError as e:
            logger.info(f"Job {self.context.job_id}: stopping run, {str(e)}")
            self.context.cancel_event.set()
            return False
        return True

    def _mark_processing(self) -> None:
        ctx = self.context
        job = self.job_store.find_job(ctx.job_id)
        if job is None:
            raise JobNotFoundError(f"Import job not found: {ctx.job_id}", job_id=ctx.job_id)
        if ctx.cancelled:
            return

        fields = {
            'status': JobStatus.PROCESSING,
            'progress': 0,
            'current_phase': ImportPhase.INITIALIZING,
        }
        if job.started_at is None:
            fields['started_at'] = utc_now()
        self._write_job(fields, expected_status=STARTABLE_STATUSES)

    def _update_progress(self, progress: int, phase: ImportPhase) -> None:
        ctx = self.context
        if ctx.cancelled:
            return
        ctx.progress = max(ctx.progress, min(progress, 99))
        self._write_job({
            'progress': ctx.progress,
            'current_phase': phase,
            'processed_records': ctx.processed_records,
            'total_records': ctx.total_records,
        })

    def _mark_completed(self) -> bool:
        ctx = self.context
        written = self._write_job({
            'status': JobStatus.COMPLETED,
            'progress': 100,
            'current_phase': ImportPhase.COMPLETED,
            'processed_records': ctx.processed_records,
            'total_records': ctx.total_records,
            'results': ctx.results,
            'completed_at': utc_now(),
        })
        if written:
            ctx.progress = 100
            ctx.current_phase = ImportPhase.COMPLETED
        return written

    def _mark_failed(self, message: str) -> None:
        ctx = self.context
        try:
            self._write_job({
                'status': JobStatus.FAILED,
                'failure_reason': message,
                'processed_records': ctx.processed_records,
                'completed_at': utc_now(),
            }, expected_status=STARTABLE_STATUSES)
        except JobNotFoundError:
            logger.error(f"Cannot mark missing job {ctx.job_id} as failed")

    def _log_error(self, message: str, phase: ImportPhase, context: Any) -> None:
        self.context.error_count += 1
        self.job_store.append_job_error(
            self.context.job_id,
            JobError(message=message, phase=phase.value, context=context),
        )
