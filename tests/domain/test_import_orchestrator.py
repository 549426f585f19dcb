"""Unit tests for ImportOrchestrator.

These tests drive complete import runs against the in-memory storage
adapters and check job state transitions, progress, record accounting, the
posts circuit breaker, fallback synthesis and cancellation.

Security Impact:
    - Verifies a malformed record never aborts a run
    - Confirms a corrupted posts section is cut off by the circuit breaker
"""

import threading

import pytest

from fhir_timeline.adapters.storage.memory_adapter import (
    InMemoryJobStore,
    InMemoryResourceStore,
    InMemoryUserDirectory,
)
from fhir_timeline.domain.enums import ImportPhase, JobStatus, ResourceType
from fhir_timeline.domain.import_job import ImportJob
from fhir_timeline.domain.ports import (
    JobNotFoundError,
    NoValidDataError,
    UserAccount,
    UserNotFoundError,
)
from fhir_timeline.domain.services.import_orchestrator import ImportOrchestrator

USER_ID = "user-1"


class RecordingJobStore(InMemoryJobStore):
    """Job store that remembers every progress value written."""

    def __init__(self):
        super().__init__()
        self.progress_writes = []

    def update_job(self, job_id, fields, expected_status=None):
        if 'progress' in fields:
            self.progress_writes.append(fields['progress'])
        return super().update_job(job_id, fields, expected_status=expected_status)


class CancellingResourceStore(InMemoryResourceStore):
    """Resource store that requests cancellation after the first Person."""

    def __init__(self, cancel_event):
        super().__init__()
        self.cancel_event = cancel_event

    def insert(self, user_id, resource):
        resource_id = super().insert(user_id, resource)
        if resource.resource_type == ResourceType.PERSON:
            self.cancel_event.set()
        return resource_id


class JobCancellingResourceStore(InMemoryResourceStore):
    """Resource store that marks the job cancelled after the first Person.

    Only the job store changes; the run's own cancel event is left alone.
    """

    def __init__(self, job_store, job_id):
        super().__init__()
        self.job_store = job_store
        self.job_id = job_id

    def insert(self, user_id, resource):
        resource_id = super().insert(user_id, resource)
        if resource.resource_type == ResourceType.PERSON:
            self.job_store.update_job(self.job_id, {'status': JobStatus.CANCELLED})
        return resource_id


@pytest.fixture
def resources():
    return InMemoryResourceStore()


@pytest.fixture
def jobs():
    return RecordingJobStore()


@pytest.fixture
def users():
    return InMemoryUserDirectory([UserAccount(user_id=USER_ID, display_name="Jane Doe", email="jane@example.com")])


@pytest.fixture
def job(jobs):
    job = ImportJob(user_id=USER_ID, filename="export.zip")
    jobs.insert_job(job)
    return job


def make_orchestrator(job, resources, jobs, users, **kwargs):
    return ImportOrchestrator(
        job_id=job.job_id,
        user_id=USER_ID,
        resource_store=resources,
        job_store=jobs,
        user_directory=users,
        **kwargs
    )


def make_post(index, timestamp=None):
    return {"timestamp": timestamp if timestamp is not None else 1600000000 + index,
            "data": [{"post": f"Post number {index}"}]}


class TestSuccessfulImport:
    """Test complete runs over recognized payloads."""

    def test_all_entity_phases(self, job, resources, jobs, users):
        """Test a payload with every entity type and experiences."""
        payload = {
            "friends": [{"name": "Alex Rivera", "timestamp": 1609459200}, {"name": "Sam"}],
            "posts": [
                {"timestamp": 1700000000, "data": [{"post": "I have a terrible headache today"}]},
                make_post(1),
                make_post(2),
            ],
            "photos": [{"uri": "photos/a.jpg"}],
            "messages": [{"content": "hi", "timestamp_ms": 1600000000000}, {"content": "bye"}],
            "experiences": {"relationship": {"status": "Single"}},
        }

        results = make_orchestrator(job, resources, jobs, users).run(payload)

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.current_phase == ImportPhase.COMPLETED
        assert stored.total_records == 10
        assert stored.processed_records == stored.total_records
        assert stored.started_at is not None
        assert stored.completed_at is not None
        assert stored.error_count == 0

        assert results.patients == 1
        assert results.persons == 2
        assert results.care_teams == 1
        assert results.clinical_impressions == 3
        assert results.media == 1
        assert results.communications == 2
        assert stored.results == results

        assert resources.count_by_user(USER_ID, ResourceType.CLINICAL_IMPRESSION) == 3
        patient = resources.find_one(USER_ID, ResourceType.PATIENT)
        assert patient["marital_status"]["text"] == "Single"
        impression = resources.find_by_user(USER_ID, ResourceType.CLINICAL_IMPRESSION)[0]
        assert impression["subject"]["reference"] == f"Patient/{patient['id']}"

    def test_progress_is_monotonic(self, job, resources, jobs, users):
        """Test progress never decreases and ends at 100."""
        payload = {"friends": [{"name": f"F{i}"} for i in range(120)],
                   "posts": [make_post(i) for i in range(120)]}

        make_orchestrator(job, resources, jobs, users, progress_update_interval=50).run(payload)

        writes = jobs.progress_writes
        assert writes == sorted(writes)
        assert writes[-1] == 100
        assert 10 in writes and 30 in writes and 50 in writes
        assert all(value <= 99 for value in writes[:-1])

    def test_recoverable_record_errors(self, job, resources, jobs, users):
        """Test that a malformed record is logged and processing continues."""
        payload = {"friends": ["not a friend", {"name": "Sam"}], "messages": [{"content": "hi"}]}

        results = make_orchestrator(job, resources, jobs, users).run(payload)

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.error_count == 1
        assert stored.errors[0].phase == "friends"
        assert stored.errors[0].context == "not a friend"
        assert stored.processed_records == stored.total_records == 4
        assert results.persons == 1
        assert results.communications == 1

    def test_existing_profile_is_updated(self, job, resources, jobs, users):
        """Test that a second import updates the profile instead of creating one."""
        make_orchestrator(job, resources, jobs, users).run({"posts": [make_post(1)]})
        second = ImportJob(user_id=USER_ID)
        jobs.insert_job(second)

        results = make_orchestrator(second, resources, jobs, users).run({
            "posts": [make_post(2)],
            "experiences": {"work": [{"employer": "Acme"}]},
        })

        assert results.patients == 0
        assert resources.count_by_user(USER_ID, ResourceType.PATIENT) == 1
        patient = resources.find_one(USER_ID, ResourceType.PATIENT)
        assert "Acme" in patient["extension"][0]["value_string"]
        assert jobs.find_job(second.job_id).processed_records == 3


class TestFallback:
    """Test fallback record synthesis."""

    def test_unrecognized_payload_creates_fallback_records(self, job, resources, jobs, users):
        """Test a payload with no recognized records."""
        results = make_orchestrator(job, resources, jobs, users).run({"unrecognized_files": ["apps/apps.json"]})

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.total_records == 5
        assert stored.processed_records == 5
        assert results.patients == 1
        assert results.communications == 1
        assert results.clinical_impressions == 1
        assert results.persons == 1
        assert results.media == 1
        assert results.care_teams == 0


class TestFailures:
    """Test fatal failures."""

    @pytest.mark.parametrize("payload", [{}, [], None, "text"])
    def test_empty_payload_fails(self, job, resources, jobs, users, payload):
        """Test that an empty payload fails the job."""
        with pytest.raises(NoValidDataError):
            make_orchestrator(job, resources, jobs, users).run(payload)

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.failure_reason == "No valid data found in archive"
        assert stored.completed_at is not None

    def test_unknown_user_fails(self, job, resources, jobs):
        """Test that a missing account fails the job."""
        with pytest.raises(UserNotFoundError):
            make_orchestrator(job, resources, jobs, InMemoryUserDirectory()).run({"posts": [make_post(1)]})

        assert jobs.find_job(job.job_id).status == JobStatus.FAILED
        assert resources.count_by_user(USER_ID, ResourceType.PATIENT) == 0

    def test_unknown_job(self, resources, jobs, users):
        """Test that running a job that was never created raises."""
        orchestrator = ImportOrchestrator(
            job_id="missing",
            user_id=USER_ID,
            resource_store=resources,
            job_store=jobs,
            user_directory=users,
        )

        with pytest.raises(JobNotFoundError):
            orchestrator.run({"posts": [make_post(1)]})


class TestPostsCircuitBreaker:
    """Test the posts phase circuit breaker."""

    def test_breaker_aborts_posts_phase(self, job, resources, jobs, users):
        """Test 15 failing posts out of 100 stop the phase at the 11th failure."""
        posts = [make_post(i, timestamp="not-a-timestamp") for i in range(15)]
        posts += [make_post(i) for i in range(15, 100)]

        results = make_orchestrator(job, resources, jobs, users).run({"posts": posts})

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.total_records == 101
        assert stored.processed_records == 12
        # 11 record errors plus the phase abort
        assert stored.error_count == 12
        assert stored.errors[-1].message.startswith("Posts phase aborted")
        assert stored.errors[-1].context["failures"] == 11
        assert results.clinical_impressions == 0

    def test_failures_under_threshold_continue(self, job, resources, jobs, users):
        """Test 10 failing posts out of 100 do not trip the breaker."""
        posts = [make_post(i, timestamp="bad") for i in range(10)]
        posts += [make_post(i) for i in range(10, 100)]

        results = make_orchestrator(job, resources, jobs, users).run({"posts": posts})

        stored = jobs.find_job(job.job_id)
        assert stored.error_count == 10
        assert stored.processed_records == stored.total_records == 101
        assert results.clinical_impressions == 90


class TestCancellation:
    """Test cooperative cancellation."""

    def test_cancel_during_friends_phase(self, job, jobs, users):
        """Test that a cancelled run stops between records without a terminal status."""
        cancel_event = threading.Event()
        resources = CancellingResourceStore(cancel_event)
        payload = {"friends": [{"name": "A"}, {"name": "B"}, {"name": "C"}], "posts": [make_post(1)]}

        results = make_orchestrator(job, resources, jobs, users, cancel_event=cancel_event).run(payload)

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.PROCESSING
        assert results.persons == 1
        assert results.clinical_impressions == 0

    def test_cancel_before_start(self, job, resources, jobs, users):
        """Test that a run cancelled before it starts does nothing."""
        orchestrator = make_orchestrator(job, resources, jobs, users)
        orchestrator.cancel()

        results = orchestrator.run({"posts": [make_post(1)]})

        assert results.total == 0
        assert jobs.find_job(job.job_id).status == JobStatus.PENDING

    def test_job_cancelled_in_store_is_not_completed(self, job, jobs, users):
        """Test a run whose job was cancelled elsewhere stops and leaves it cancelled."""
        resources = JobCancellingResourceStore(jobs, job.job_id)
        payload = {"friends": [{"name": "A"}, {"name": "B"}], "posts": [make_post(1), make_post(2)]}

        results = make_orchestrator(job, resources, jobs, users).run(payload)

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.failure_reason is None
        assert results.clinical_impressions == 0

    def test_job_cancelled_before_start_stays_cancelled(self, job, resources, jobs, users):
        """Test a run never moves a cancelled job back to processing."""
        jobs.update_job(job.job_id, {'status': JobStatus.CANCELLED})

        results = make_orchestrator(job, resources, jobs, users).run({"posts": [make_post(1)]})

        stored = jobs.find_job(job.job_id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.started_at is None
        assert results.total == 0
