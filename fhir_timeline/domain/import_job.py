"""Import job model.

An ``ImportJob`` tracks one archive import from upload to completion. It is
created ``pending`` by the upload path, driven through ``processing`` by the
import orchestrator and finishes ``completed``, ``failed`` or (through the
external cancel path) ``cancelled``.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from fhir_timeline.domain.enums import ImportPhase, JobStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobError(BaseModel):
    """A recoverable per-record error recorded on the job."""

    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    phase: Optional[str] = None
    context: Optional[Any] = Field(None, description="Offending raw record")


class ImportResults(BaseModel):
    """Counts of resources produced by an import."""

    patients: int = 0
    communications: int = 0
    clinical_impressions: int = 0
    media: int = 0
    persons: int = 0
    care_teams: int = 0

    @property
    def total(self) -> int:
        return (
            self.patients + self.communications + self.clinical_impressions
            + self.media + self.persons + self.care_teams
        )


class ImportJob(BaseModel):
    """Import job state.

    Invariants:
        - ``progress`` is within [0, 100]
        - ``processed_records`` never exceeds ``total_records``
    """

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    filename: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_phase: Optional[ImportPhase] = None
    total_records: int = Field(default=0, ge=0)
    processed_records: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    errors: list[JobError] = Field(default_factory=list)
    results: Optional[ImportResults] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_record_counts(self) -> "ImportJob":
        if self.total_records and self.processed_records > self.total_records:
            raise ValueError(
                f"processed_records ({self.processed_records}) exceeds "
                f"total_records ({self.total_records})"
            )
        return self
