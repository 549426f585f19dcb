"""Enumerations shared by the domain models and services."""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle states of an import job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ImportPhase(str, Enum):
    """Named phases reported through ``ImportJob.current_phase``."""
    INITIALIZING = "initializing"
    PROFILE = "profile"
    FRIENDS = "friends"
    POSTS = "posts"
    MEDIA = "media"
    MESSAGES = "messages"
    FALLBACK = "fallback"
    COMPLETED = "completed"


class FileCategory(str, Enum):
    """Categories assigned to archive entries by the scanner."""
    DEMOGRAPHICS = "demographics"
    FRIENDS = "friends"
    POSTS = "posts"
    MESSAGES = "messages"
    MEDIA = "media"
    OTHER = "other"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


class TemporalPattern(str, Enum):
    ACUTE = "acute"
    CHRONIC = "chronic"
    RECURRING = "recurring"
    UNKNOWN = "unknown"


class FindingType(str, Enum):
    """Kind of clinical finding extracted from free text."""
    CONDITION = "condition"
    MEDICATION = "medication"
    VITAL_SIGN = "vital-sign"


class ResourceType(str, Enum):
    """Clinical resource types produced by an import."""
    PATIENT = "Patient"
    COMMUNICATION = "Communication"
    CLINICAL_IMPRESSION = "ClinicalImpression"
    MEDIA = "Media"
    PERSON = "Person"
    CARE_TEAM = "CareTeam"
