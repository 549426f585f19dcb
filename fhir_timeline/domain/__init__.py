"""Domain layer for FHIR Timeline.

This module contains the resource models, import job model, ports and the
import services. Domain models depend on nothing beyond Pydantic.
"""

from .import_job import ImportJob, ImportResults, JobError
from .resources import (
    CareTeamRecord,
    ClinicalFinding,
    ClinicalImpressionRecord,
    CommunicationRecord,
    MediaRecord,
    PatientRecord,
    PersonRecord,
)

__all__ = [
    "CareTeamRecord",
    "ClinicalFinding",
    "ClinicalImpressionRecord",
    "CommunicationRecord",
    "ImportJob",
    "ImportResults",
    "JobError",
    "MediaRecord",
    "PatientRecord",
    "PersonRecord",
]
