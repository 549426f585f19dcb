"""Clinical Resource Schema Definitions.

This module defines the FHIR-flavoured resource models produced by an archive
import: the user's health record profile (Patient), messages (Communication),
health notes derived from posts (ClinicalImpression), photos and videos (Media),
contacts (Person) and the per-import support network (CareTeam).

Security Impact:
    - Every persisted resource carries the owning user id, stamped by storage
    - Schema validation prevents malformed resources from reaching persistence
    - Type safety enforced at runtime via Pydantic V2

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Field names are snake_case; storage serializes with ``model_dump(mode="json")``
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fhir_timeline.domain.enums import (
    FindingType,
    ResourceType,
    Severity,
    TemporalPattern,
)

SNOMED_SYSTEM = "http://snomed.info/sct"
PATIENT_ID_SYSTEM = "https://facebook-fhir-timeline.com/patient-id"
OCCUPATION_EXTENSION_URL = "http://hl7.org/fhir/StructureDefinition/patient-occupation"
EDUCATION_EXTENSION_URL = "http://hl7.org/fhir/StructureDefinition/patient-education"
KNOWN_SINCE_EXTENSION_URL = "https://facebook-fhir-timeline.com/fhir/StructureDefinition/known-since"


def _new_resource_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# Supporting data types
# ============================================================================

class Coding(BaseModel):
    """A code from a terminology system."""
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(BaseModel):
    """A concept with optional codings and a human-readable text."""
    text: Optional[str] = None
    coding: list[Coding] = Field(default_factory=list)


class Reference(BaseModel):
    """Reference to another resource, e.g. ``Patient/<id>``."""
    reference: Optional[str] = None
    display: Optional[str] = None

    @classmethod
    def to(cls, resource_type: ResourceType, resource_id: str, display: Optional[str] = None) -> "Reference":
        return cls(reference=f"{resource_type.value}/{resource_id}", display=display)


class Period(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class Identifier(BaseModel):
    use: Optional[str] = None
    system: Optional[str] = None
    value: str


class HumanName(BaseModel):
    use: Optional[str] = None
    text: str


class ContactPoint(BaseModel):
    system: str = Field(..., description="Contact system (email, phone)")
    value: str
    use: Optional[str] = None


class Address(BaseModel):
    use: Optional[str] = None
    text: str
    period: Optional[Period] = None


class Extension(BaseModel):
    """Extension carrying either a string or a date-time value."""
    url: str
    value_string: Optional[str] = None
    value_date_time: Optional[datetime] = None


class Attachment(BaseModel):
    content_type: str = "application/octet-stream"
    url: Optional[str] = None
    title: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    creation: Optional[datetime] = None


class ResourceMeta(BaseModel):
    source: Optional[str] = None
    last_updated: Optional[datetime] = None


# ============================================================================
# Resources
# ============================================================================

class ClinicalResource(BaseModel):
    """Common envelope of every persisted resource.

    ``user_id``, ``created_at``, ``updated_at`` and ``meta`` are stamped by the
    resource storage adapter on insert; transformers leave them unset.
    """

    id: str = Field(default_factory=_new_resource_id, description="Resource identifier")
    resource_type: ResourceType
    user_id: Optional[str] = Field(None, description="Owning user (stamped by storage)")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    meta: Optional[ResourceMeta] = None

    model_config = ConfigDict(validate_assignment=True)


class PatientRecord(ClinicalResource):
    """Health record profile of the importing user (one per user).

    Parameters:
        identifier: Platform identifiers of the user
        name: Display name (falls back to email, then "Unknown")
        telecom: Email/phone contact points
        extension: Work and education history as JSON strings
        address: Places lived, with periods when known
        marital_status: Relationship status text
    """

    resource_type: ResourceType = ResourceType.PATIENT
    identifier: list[Identifier] = Field(default_factory=list)
    active: bool = True
    name: list[HumanName] = Field(default_factory=list)
    telecom: list[ContactPoint] = Field(default_factory=list)
    extension: list[Extension] = Field(default_factory=list)
    address: list[Address] = Field(default_factory=list)
    marital_status: Optional[CodeableConcept] = None


class CommunicationPayload(BaseModel):
    content_string: str


class CommunicationRecord(ClinicalResource):
    """A message sent or received by the user. Immutable once created."""

    resource_type: ResourceType = ResourceType.COMMUNICATION
    status: str = "completed"
    subject: Optional[Reference] = None
    sent: Optional[datetime] = None
    sender: Optional[Reference] = None
    recipient: list[Reference] = Field(default_factory=list)
    payload: list[CommunicationPayload] = Field(default_factory=list)
    category: list[CodeableConcept] = Field(default_factory=list)


class ImpressionFinding(BaseModel):
    """A finding attached to a health note.

    ``basis`` is "likely" when confidence exceeds 0.7, otherwise "possible".
    """

    item: CodeableConcept
    basis: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    severity: Severity = Severity.UNKNOWN
    temporal: TemporalPattern = TemporalPattern.UNKNOWN
    finding_type: FindingType = FindingType.CONDITION


class Investigation(BaseModel):
    code: CodeableConcept
    item: list[Reference] = Field(default_factory=list)


class ClinicalImpressionRecord(ClinicalResource):
    """Health note derived from a post."""

    resource_type: ResourceType = ResourceType.CLINICAL_IMPRESSION
    status: str = "completed"
    subject: Reference
    assessor: Optional[Reference] = None
    date: Optional[datetime] = None
    description: str
    investigation: list[Investigation] = Field(default_factory=list)
    finding: list[ImpressionFinding] = Field(default_factory=list)


class MediaRecord(ClinicalResource):
    """Photo or video reference."""

    resource_type: ResourceType = ResourceType.MEDIA
    status: str = "completed"
    type: CodeableConcept = Field(default_factory=lambda: CodeableConcept(text="unknown"))
    subject: Optional[Reference] = None
    created_date_time: Optional[datetime] = None
    content: Attachment = Field(default_factory=Attachment)


class PersonLink(BaseModel):
    target: Reference
    assurance: str = "level2"


class PersonRecord(ClinicalResource):
    """A contact (friend) of the user."""

    resource_type: ResourceType = ResourceType.PERSON
    active: bool = True
    name: list[HumanName] = Field(default_factory=list)
    link: list[PersonLink] = Field(default_factory=list)
    extension: list[Extension] = Field(default_factory=list)


class CareTeamParticipant(BaseModel):
    role: list[CodeableConcept] = Field(default_factory=list)
    member: Reference
    period: Optional[Period] = None


class CareTeamRecord(ClinicalResource):
    """Support network grouping the contacts created by one import."""

    resource_type: ResourceType = ResourceType.CARE_TEAM
    status: str = "active"
    name: str = "Social Support Network"
    subject: Optional[Reference] = None
    participant: list[CareTeamParticipant] = Field(default_factory=list)

    @field_validator("participant")
    @classmethod
    def validate_participants(cls, v: list[CareTeamParticipant]) -> list[CareTeamParticipant]:
        """A support network without members is never created."""
        if not v:
            raise ValueError("CareTeam requires at least one participant")
        return v


# ============================================================================
# Value objects
# ============================================================================

class ClinicalFinding(BaseModel):
    """A clinical finding extracted from free text by the classifier.

    Parameters:
        term: Matched term (or matched text for pattern findings)
        display: Human-readable concept name
        system: Terminology system of ``code`` (SNOMED CT)
        code: Concept code, when the term is mapped
        confidence: Heuristic confidence in [0, 1]
        severity: Severity bucket detected anywhere in the text
        temporal: Temporal pattern detected anywhere in the text
        context: Snippet of text around the first occurrence
        finding_type: condition, medication or vital-sign
    """

    term: str
    display: str
    system: Optional[str] = None
    code: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    severity: Severity = Severity.UNKNOWN
    temporal: TemporalPattern = TemporalPattern.UNKNOWN
    context: str = ""
    finding_type: FindingType = FindingType.CONDITION

    model_config = ConfigDict(frozen=True)
