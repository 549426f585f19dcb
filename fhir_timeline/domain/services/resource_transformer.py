"""Resource Transformer - raw archive records to clinical resources.

Each ``transform_*`` method takes one raw record (a dict parsed from the
archive) and returns validated resource models, or None when the record is a
silent skip (empty post, nameless friend, empty message). Malformed records
raise ``TransformationError`` so the orchestrator can log them against the job
and move on.

The transformer never touches storage: resource ids are generated when the
models are built, so a post's attached Media can be referenced from its
ClinicalImpression before anything is persisted.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fhir_timeline.domain.enums import ResourceType
from fhir_timeline.domain.ports import TransformationError, UserAccount
from fhir_timeline.domain.resources import (
    EDUCATION_EXTENSION_URL,
    KNOWN_SINCE_EXTENSION_URL,
    OCCUPATION_EXTENSION_URL,
    PATIENT_ID_SYSTEM,
    Address,
    Attachment,
    CareTeamParticipant,
    CareTeamRecord,
    ClinicalFinding,
    ClinicalImpressionRecord,
    ClinicalResource,
    CodeableConcept,
    Coding,
    CommunicationPayload,
    CommunicationRecord,
    ContactPoint,
    Extension,
    HumanName,
    Identifier,
    ImpressionFinding,
    Investigation,
    MediaRecord,
    PatientRecord,
    Period,
    PersonLink,
    PersonRecord,
    Reference,
)
from fhir_timeline.domain.services.clinical_classifier import ClinicalTextClassifier

logger = logging.getLogger(__name__)

MESSAGE_CATEGORY = "Social Media Message"
SOCIAL_CONTACT_ROLE = "Social Contact"
MEDIA_INVESTIGATION = "Social Media Health Report"
ATTACHMENT_ONLY_DESCRIPTION = "Shared media without text"
FALLBACK_COMMUNICATION_TEXT = "This is a test communication to verify FHIR creation is working."
FALLBACK_IMPRESSION_TEXT = "No importable records were found in the archive; test clinical impression created."

CONTENT_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.gif': 'image/gif',
    '.mp4': 'video/mp4',
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, milliseconds: bool = False) -> Optional[datetime]:
    """Convert a unix timestamp (seconds, or milliseconds) to an aware datetime.

    Parameters:
        value: int, float or numeric string; None yields None
        milliseconds: Interpret ``value`` as milliseconds

    Returns:
        Optional[datetime]: UTC datetime, or None when value is None

    Raises:
        TransformationError: If the value is not a usable timestamp
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise TransformationError(f"Invalid timestamp: {value!r}", raw_data=value)
    try:
        seconds = float(value)
        if not math.isfinite(seconds):
            raise ValueError("non-finite timestamp")
        if milliseconds:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise TransformationError(f"Invalid timestamp {value!r}: {e}", raw_data=value) from e


def content_type_for(uri: Optional[str]) -> str:
    if not uri:
        return 'application/octet-stream'
    lowered = uri.lower()
    for extension, content_type in CONTENT_TYPES.items():
        if lowered.endswith(extension):
            return content_type
    return 'application/octet-stream'


def _require_dict(record: Any, source: str) -> dict:
    if not isinstance(record, dict):
        raise TransformationError(
            f"Expected a {source} object, got {type(record).__name__}",
            source=source,
            raw_data=record,
        )
    return record


def _clean_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class TransformedPost:
    """A post's health note plus the media it embeds."""

    impression: ClinicalImpressionRecord
    media: list[MediaRecord] = field(default_factory=list)
    findings: list[ClinicalFinding] = field(default_factory=list)


@dataclass
class TransformedFriend:
    person: PersonRecord
    participant: CareTeamParticipant


class ResourceTransformer:
    """Build clinical resources for one user's import run.

    Parameters:
        user_id: Importing user
        classifier: Clinical text classifier used for posts
        clock: Source of "now" for records without timestamps

    Example Usage:
        ```python
        transformer = ResourceTransformer(user_id="u1")
        transformer.bind_patient(profile.id)
        post = transformer.transform_post({"timestamp": 1700000000, "data": [{"post": "I have a fever"}]})
        post.impression.finding[0].item.text  # 'fever'
        ```
    """

    def __init__(
        self,
        user_id: str,
        classifier: Optional[ClinicalTextClassifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.user_id = user_id
        self.classifier = classifier or ClinicalTextClassifier()
        self.clock = clock
        self.patient_id: Optional[str] = None

    def bind_patient(self, patient_id: str) -> None:
        """Set the Patient resource that produced resources refer to."""
        self.patient_id = patient_id

    def patient_reference(self, display: Optional[str] = "Self") -> Reference:
        return Reference.to(ResourceType.PATIENT, self.patient_id or self.user_id, display)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def build_profile(self, account: UserAccount, experiences: Optional[dict] = None) -> PatientRecord:
        """Build the user's health record profile.

        Parameters:
            account: Account from the user directory
            experiences: Optional experiences sub-document (work, education,
                places_lived, relationship)

        Returns:
            PatientRecord: Profile with demographics and experiences applied
        """
        display = account.display_name or account.email or 'Unknown'
        telecom = []
        if account.email:
            telecom.append(ContactPoint(system='email', value=account.email, use='home'))
        if account.phone:
            telecom.append(ContactPoint(system='phone', value=account.phone, use='mobile'))

        profile = PatientRecord(
            identifier=[Identifier(use='usual', system=PATIENT_ID_SYSTEM, value=account.user_id)],
            name=[HumanName(use='usual', text=display)],
            telecom=telecom,
        )
        if experiences:
            self.apply_experiences(profile, experiences)
        return profile

    def apply_experiences(self, profile: PatientRecord, experiences: dict) -> PatientRecord:
        """Apply work, education, places lived and relationship status."""
        work = experiences.get('work')
        if work:
            self._set_extension(profile, OCCUPATION_EXTENSION_URL, json.dumps(work, default=str))

        education = experiences.get('education')
        if education:
            self._set_extension(profile, EDUCATION_EXTENSION_URL, json.dumps(education, default=str))

        places = experiences.get('places_lived')
        if isinstance(places, list) and places:
            addresses = []
            for place in places:
                if not isinstance(place, dict):
                    continue
                start = parse_timestamp(place.get('start_timestamp'))
                end = parse_timestamp(place.get('end_timestamp'))
                addresses.append(Address(
                    use='home',
                    text=_clean_text(place.get('name')) or 'Unknown location',
                    period=Period(start=start, end=end) if (start or end) else None,
                ))
            profile.address = addresses

        relationship = experiences.get('relationship')
        if isinstance(relationship, dict) and _clean_text(relationship.get('status')):
            profile.marital_status = CodeableConcept(text=relationship['status'].strip())

        return profile

    def profile_changes(self, profile: PatientRecord, existing: dict) -> dict:
        """Compute the update applied to an existing profile document.

        Extensions with other URLs, addresses and marital status already on
        the stored profile are kept when this import does not provide them.
        """
        changes = profile.model_dump(mode='json', include={'identifier', 'active', 'name', 'telecom'})

        replaced_urls = {ext.url for ext in profile.extension}
        kept = [ext for ext in existing.get('extension') or [] if ext.get('url') not in replaced_urls]
        changes['extension'] = kept + [ext.model_dump(mode='json') for ext in profile.extension]

        if profile.address:
            changes['address'] = [address.model_dump(mode='json') for address in profile.address]
        if profile.marital_status is not None:
            changes['marital_status'] = profile.marital_status.model_dump(mode='json')
        return changes

    @staticmethod
    def _set_extension(profile: PatientRecord, url: str, value: str) -> None:
        extensions = [ext for ext in profile.extension if ext.url != url]
        extensions.append(Extension(url=url, value_string=value))
        profile.extension = extensions

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    @staticmethod
    def extract_post_text(post: dict) -> Optional[str]:
        """Post text from ``data[0].post``, ``post``, ``message`` or ``text``."""
        data = post.get('data')
        if isinstance(data, list) and data and isinstance(data[0], dict):
            text = _clean_text(data[0].get('post'))
            if text:
                return text
        for key in ('post', 'message', 'text'):
            text = _clean_text(post.get(key))
            if text:
                return text
        return None

    def transform_post(self, post: Any) -> Optional[TransformedPost]:
        """Transform a post into a ClinicalImpression and its attached Media.

        Returns:
            Optional[TransformedPost]: None for posts with neither text nor
            attached media

        Raises:
            TransformationError: If the post is malformed
        """
        post = _require_dict(post, 'post')
        text = self.extract_post_text(post)
        posted_at = parse_timestamp(post.get('timestamp')) or self.clock()

        media = [
            self._build_media(item, fallback_time=posted_at)
            for item in self._attachment_media(post)
        ]
        if not text and not media:
            return None

        findings: list[ClinicalFinding] = []
        if text and self.classifier.is_clinically_relevant(text):
            findings = self.classifier.extract_findings(text)

        investigation = []
        if media:
            investigation.append(Investigation(
                code=CodeableConcept(text=MEDIA_INVESTIGATION),
                item=[Reference.to(ResourceType.MEDIA, m.id, m.content.title) for m in media],
            ))

        impression = ClinicalImpressionRecord(
            subject=self.patient_reference(),
            assessor=self.patient_reference('Self-reported'),
            date=posted_at,
            description=text or ATTACHMENT_ONLY_DESCRIPTION,
            investigation=investigation,
            finding=[self._to_impression_finding(f) for f in findings],
        )
        return TransformedPost(impression=impression, media=media, findings=findings)

    @staticmethod
    def _attachment_media(post: dict) -> list[dict]:
        items = []
        for attachment in post.get('attachments') or []:
            if not isinstance(attachment, dict):
                continue
            for entry in attachment.get('data') or []:
                if isinstance(entry, dict) and isinstance(entry.get('media'), dict):
                    items.append(entry['media'])
        return items

    @staticmethod
    def _to_impression_finding(finding: ClinicalFinding) -> ImpressionFinding:
        coding = []
        if finding.code:
            coding.append(Coding(system=finding.system, code=finding.code, display=finding.display))
        return ImpressionFinding(
            item=CodeableConcept(text=finding.term, coding=coding),
            basis='likely' if finding.confidence > 0.7 else 'possible',
            confidence=finding.confidence,
            severity=finding.severity,
            temporal=finding.temporal,
            finding_type=finding.finding_type,
        )

    # ------------------------------------------------------------------
    # Friends
    # ------------------------------------------------------------------

    def transform_friend(self, friend: Any) -> Optional[TransformedFriend]:
        """Transform a friend into a contact and a support network participant.

        Returns None for friends without a name.
        """
        friend = _require_dict(friend, 'friend')
        name = _clean_text(friend.get('name'))
        if not name:
            return None

        known_since = parse_timestamp(friend.get('timestamp'))
        extensions = []
        if known_since:
            extensions.append(Extension(url=KNOWN_SINCE_EXTENSION_URL, value_date_time=known_since))

        person = PersonRecord(
            name=[HumanName(use='usual', text=name)],
            link=[PersonLink(target=self.patient_reference(), assurance='level2')],
            extension=extensions,
        )
        participant = CareTeamParticipant(
            role=[CodeableConcept(text=SOCIAL_CONTACT_ROLE)],
            member=Reference.to(ResourceType.PERSON, person.id, name),
            period=Period(start=known_since or self.clock()),
        )
        return TransformedFriend(person=person, participant=participant)

    def build_care_team(self, participants: list[CareTeamParticipant]) -> Optional[CareTeamRecord]:
        """Group this run's contacts into one support network (None when empty)."""
        if not participants:
            return None
        return CareTeamRecord(subject=self.patient_reference(), participant=list(participants))

    # ------------------------------------------------------------------
    # Media and messages
    # ------------------------------------------------------------------

    def transform_media(self, item: Any) -> MediaRecord:
        item = _require_dict(item, 'media')
        return self._build_media(item, fallback_time=None)

    def _build_media(self, item: dict, fallback_time: Optional[datetime]) -> MediaRecord:
        created = (
            parse_timestamp(item.get('creation_timestamp'))
            or parse_timestamp(item.get('timestamp'))
            or fallback_time
            or self.clock()
        )
        uri = item.get('uri') if isinstance(item.get('uri'), str) else None
        content_type = content_type_for(uri)
        size = item.get('size') if isinstance(item.get('size'), int) and item.get('size') >= 0 else None

        media_type = _clean_text(item.get('media_type'))
        if not media_type:
            if content_type.startswith('image/'):
                media_type = 'photo'
            elif content_type.startswith('video/'):
                media_type = 'video'
            else:
                media_type = 'unknown'

        return MediaRecord(
            type=CodeableConcept(text=media_type),
            subject=self.patient_reference(),
            created_date_time=created,
            content=Attachment(
                content_type=content_type,
                url=uri,
                title=_clean_text(item.get('title')) or _clean_text(item.get('description')),
                size=size,
                creation=created,
            ),
        )

    def transform_message(self, message: Any) -> Optional[CommunicationRecord]:
        """Transform a message into a Communication (None when it has no content)."""
        message = _require_dict(message, 'message')
        content = _clean_text(message.get('content'))
        if not content:
            return None

        sent = (
            parse_timestamp(message.get('timestamp_ms'), milliseconds=True)
            or parse_timestamp(message.get('timestamp'))
            or self.clock()
        )
        sender_name = _clean_text(message.get('sender_name'))
        return CommunicationRecord(
            subject=self.patient_reference(),
            sent=sent,
            sender=Reference(display=sender_name) if sender_name else None,
            recipient=[self.patient_reference()],
            payload=[CommunicationPayload(content_string=content)],
            category=[CodeableConcept(text=MESSAGE_CATEGORY)],
        )

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def build_fallback_records(self) -> list[ClinicalResource]:
        """One Communication, ClinicalImpression, Person and Media.

        Used when an archive has content but none of it matched a known shape,
        so the user can see that resource creation works.
        """
        now = self.clock()
        return [
            CommunicationRecord(
                subject=self.patient_reference(),
                sent=now,
                recipient=[self.patient_reference()],
                payload=[CommunicationPayload(content_string=FALLBACK_COMMUNICATION_TEXT)],
                category=[CodeableConcept(text=MESSAGE_CATEGORY)],
            ),
            ClinicalImpressionRecord(
                subject=self.patient_reference(),
                assessor=self.patient_reference('Self-reported'),
                date=now,
                description=FALLBACK_IMPRESSION_TEXT,
            ),
            PersonRecord(
                name=[HumanName(use='usual', text='Test Contact')],
                link=[PersonLink(target=self.patient_reference(), assurance='level2')],
            ),
            MediaRecord(
                type=CodeableConcept(text='unknown'),
                subject=self.patient_reference(),
                created_date_time=now,
                content=Attachment(title='Test media'),
            ),
        ]
