"""Unit tests for ResourceTransformer.

Covers every raw record type (profile, post, friend, media, message) and the
fallback records, with a fixed clock so timestamps are deterministic.
"""

import json
from datetime import datetime, timezone

import pytest

from fhir_timeline.domain.enums import ResourceType
from fhir_timeline.domain.ports import TransformationError, UserAccount
from fhir_timeline.domain.resources import (
    EDUCATION_EXTENSION_URL,
    KNOWN_SINCE_EXTENSION_URL,
    OCCUPATION_EXTENSION_URL,
    PATIENT_ID_SYSTEM,
)
from fhir_timeline.domain.services.resource_transformer import (
    ATTACHMENT_ONLY_DESCRIPTION,
    MESSAGE_CATEGORY,
    ResourceTransformer,
    content_type_for,
    parse_timestamp,
)

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def transformer():
    transformer = ResourceTransformer(user_id="user-1", clock=lambda: FIXED_NOW)
    transformer.bind_patient("patient-1")
    return transformer


class TestParseTimestamp:
    """Test timestamp conversion."""

    def test_seconds(self):
        """Test unix seconds."""
        assert parse_timestamp(1609459200) == datetime(2021, 1, 1, tzinfo=timezone.utc)

    def test_milliseconds(self):
        """Test unix milliseconds."""
        assert parse_timestamp(1609459200000, milliseconds=True) == datetime(2021, 1, 1, tzinfo=timezone.utc)

    def test_numeric_string(self):
        """Test numeric strings are accepted."""
        assert parse_timestamp("1609459200") == datetime(2021, 1, 1, tzinfo=timezone.utc)

    def test_none(self):
        """Test that a missing timestamp yields None."""
        assert parse_timestamp(None) is None

    @pytest.mark.parametrize("value", ["yesterday", True, float("nan"), {"ts": 1}])
    def test_invalid_values(self, value):
        """Test that unusable values raise TransformationError."""
        with pytest.raises(TransformationError):
            parse_timestamp(value)


class TestContentTypeFor:
    """Test content type detection from file names."""

    @pytest.mark.parametrize("uri,expected", [
        ("photos/a.JPG", "image/jpeg"),
        ("photos/a.jpeg", "image/jpeg"),
        ("photos/a.png", "image/png"),
        ("photos/a.gif", "image/gif"),
        ("videos/a.mp4", "video/mp4"),
        ("files/a.bin", "application/octet-stream"),
        (None, "application/octet-stream"),
    ])
    def test_content_types(self, uri, expected):
        """Test extension to content type mapping."""
        assert content_type_for(uri) == expected


class TestProfile:
    """Test profile building and updates."""

    def test_build_profile_from_account(self, transformer):
        """Test demographics taken from the account."""
        account = UserAccount(user_id="user-1", display_name="Jane Doe", email="jane@example.com", phone="555-0100")

        profile = transformer.build_profile(account)

        assert profile.resource_type == ResourceType.PATIENT
        assert profile.identifier[0].system == PATIENT_ID_SYSTEM
        assert profile.identifier[0].value == "user-1"
        assert profile.name[0].text == "Jane Doe"
        assert [(t.system, t.use) for t in profile.telecom] == [("email", "home"), ("phone", "mobile")]

    def test_name_falls_back_to_email_then_unknown(self, transformer):
        """Test the display name fallback chain."""
        by_email = transformer.build_profile(UserAccount(user_id="u", email="a@b.c"))
        unknown = transformer.build_profile(UserAccount(user_id="u"))

        assert by_email.name[0].text == "a@b.c"
        assert unknown.name[0].text == "Unknown"
        assert unknown.telecom == []

    def test_experiences_are_applied(self, transformer):
        """Test work, education, places lived and relationship."""
        experiences = {
            "work": [{"employer": "Acme"}],
            "education": [{"name": "State University"}],
            "places_lived": [
                {"name": "Springfield", "start_timestamp": 1262304000},
                {"end_timestamp": 1293840000},
            ],
            "relationship": {"status": "Married"},
        }

        profile = transformer.build_profile(UserAccount(user_id="user-1"), experiences)

        extensions = {ext.url: ext.value_string for ext in profile.extension}
        assert json.loads(extensions[OCCUPATION_EXTENSION_URL]) == [{"employer": "Acme"}]
        assert json.loads(extensions[EDUCATION_EXTENSION_URL]) == [{"name": "State University"}]
        assert profile.address[0].text == "Springfield"
        assert profile.address[0].use == "home"
        assert profile.address[0].period.start == datetime(2010, 1, 1, tzinfo=timezone.utc)
        assert profile.address[1].text == "Unknown location"
        assert profile.address[1].period.end == datetime(2011, 1, 1, tzinfo=timezone.utc)
        assert profile.marital_status.text == "Married"

    def test_profile_changes_keep_existing_data(self, transformer):
        """Test that an update keeps what this import does not provide."""
        existing = {
            "id": "patient-1",
            "extension": [
                {"url": "http://example.com/other", "value_string": "kept"},
                {"url": OCCUPATION_EXTENSION_URL, "value_string": "old job"},
            ],
            "address": [{"text": "Old Town"}],
        }
        profile = transformer.build_profile(
            UserAccount(user_id="user-1", display_name="Jane"),
            {"work": [{"employer": "New Co"}]},
        )

        changes = transformer.profile_changes(profile, existing)

        urls = [ext["url"] for ext in changes["extension"]]
        assert urls == ["http://example.com/other", OCCUPATION_EXTENSION_URL]
        assert "New Co" in changes["extension"][1]["value_string"]
        assert "address" not in changes
        assert "marital_status" not in changes
        assert changes["name"][0]["text"] == "Jane"


class TestTransformPost:
    """Test post transformation."""

    def test_health_post(self, transformer):
        """Test a clinically relevant post produces findings."""
        post = {"timestamp": 1700000000, "data": [{"post": "I have a terrible headache today"}]}

        transformed = transformer.transform_post(post)

        impression = transformed.impression
        assert impression.resource_type == ResourceType.CLINICAL_IMPRESSION
        assert impression.subject.reference == "Patient/patient-1"
        assert impression.assessor.display == "Self-reported"
        assert impression.assessor.reference == "Patient/patient-1"
        assert impression.description == "I have a terrible headache today"
        assert impression.date == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert len(impression.finding) == 1
        finding = impression.finding[0]
        assert finding.item.text == "headache"
        assert finding.item.coding[0].code == "25064002"
        assert finding.basis == "likely"
        assert transformed.media == []

    def test_plain_post_has_no_findings(self, transformer):
        """Test that a non-health post still becomes a health note."""
        transformed = transformer.transform_post({"post": "Lovely day at the beach"})

        assert transformed.impression.finding == []
        assert transformed.impression.date == FIXED_NOW

    def test_attachment_only_post(self, transformer):
        """Test a post with media but no text."""
        post = {
            "timestamp": 1700000000,
            "attachments": [{"data": [{"media": {
                "uri": "photos/beach.jpg",
                "creation_timestamp": 1600000000,
                "title": "Beach",
            }}]}],
        }

        transformed = transformer.transform_post(post)

        assert transformed.impression.description == ATTACHMENT_ONLY_DESCRIPTION
        assert len(transformed.media) == 1
        media = transformed.media[0]
        assert media.content.content_type == "image/jpeg"
        assert media.type.text == "photo"
        assert media.created_date_time == datetime.fromtimestamp(1600000000, tz=timezone.utc)
        investigation = transformed.impression.investigation[0]
        assert investigation.item[0].reference == f"Media/{media.id}"

    def test_empty_post_is_skipped(self, transformer):
        """Test that a post without text or media yields None."""
        assert transformer.transform_post({"timestamp": 1700000000, "data": [{"post": "  "}]}) is None

    def test_malformed_post_raises(self, transformer):
        """Test that malformed posts raise TransformationError."""
        with pytest.raises(TransformationError):
            transformer.transform_post("not a post")
        with pytest.raises(TransformationError):
            transformer.transform_post({"timestamp": "not-a-timestamp", "post": "hello"})


class TestTransformFriend:
    """Test friend transformation."""

    def test_alex_rivera(self, transformer):
        """Test a named friend with a known-since timestamp."""
        transformed = transformer.transform_friend({"name": "Alex Rivera", "timestamp": 1609459200})

        person = transformed.person
        assert person.resource_type == ResourceType.PERSON
        assert person.name[0].text == "Alex Rivera"
        assert person.link[0].target.reference == "Patient/patient-1"
        assert person.link[0].assurance == "level2"
        assert person.extension[0].url == KNOWN_SINCE_EXTENSION_URL
        assert person.extension[0].value_date_time == datetime(2021, 1, 1, tzinfo=timezone.utc)

        participant = transformed.participant
        assert participant.role[0].text == "Social Contact"
        assert participant.member.reference == f"Person/{person.id}"
        assert participant.member.display == "Alex Rivera"
        assert participant.period.start == datetime(2021, 1, 1, tzinfo=timezone.utc)

    def test_friend_without_timestamp(self, transformer):
        """Test that the participant period starts now when unknown."""
        transformed = transformer.transform_friend({"name": "Sam"})

        assert transformed.person.extension == []
        assert transformed.participant.period.start == FIXED_NOW

    def test_nameless_friend_is_skipped(self, transformer):
        """Test that friends without a name yield None."""
        assert transformer.transform_friend({"timestamp": 1609459200}) is None
        assert transformer.transform_friend({"name": ""}) is None

    def test_care_team(self, transformer):
        """Test the support network grouping."""
        participants = [
            transformer.transform_friend({"name": "A"}).participant,
            transformer.transform_friend({"name": "B"}).participant,
        ]

        care_team = transformer.build_care_team(participants)

        assert care_team.name == "Social Support Network"
        assert care_team.status == "active"
        assert len(care_team.participant) == 2
        assert transformer.build_care_team([]) is None


class TestTransformMediaAndMessages:
    """Test standalone media and message transformation."""

    def test_media_without_timestamps_uses_clock(self, transformer):
        """Test created time falls back to now."""
        media = transformer.transform_media({"uri": "videos/clip.mp4"})

        assert media.created_date_time == FIXED_NOW
        assert media.type.text == "video"
        assert media.content.url == "videos/clip.mp4"

    def test_media_type_is_kept(self, transformer):
        """Test an explicit media type wins over the inferred one."""
        media = transformer.transform_media({"uri": "a.bin", "media_type": "scan", "timestamp": 1600000000})

        assert media.type.text == "scan"
        assert media.content.content_type == "application/octet-stream"

    def test_message(self, transformer):
        """Test a message becomes a Communication."""
        message = {"sender_name": "Sam", "timestamp_ms": 1609459200000, "content": "Feeling better"}

        communication = transformer.transform_message(message)

        assert communication.resource_type == ResourceType.COMMUNICATION
        assert communication.sent == datetime(2021, 1, 1, tzinfo=timezone.utc)
        assert communication.sender.display == "Sam"
        assert [r.reference for r in communication.recipient] == ["Patient/patient-1"]
        assert communication.payload[0].content_string == "Feeling better"
        assert communication.category[0].text == MESSAGE_CATEGORY

    def test_empty_message_is_skipped(self, transformer):
        """Test that messages without content yield None."""
        assert transformer.transform_message({"sender_name": "Sam", "photos": []}) is None


class TestFallbackRecords:
    """Test fallback record synthesis."""

    def test_fallback_records(self, transformer):
        """Test one record of each fallback type."""
        records = transformer.build_fallback_records()

        assert [r.resource_type for r in records] == [
            ResourceType.COMMUNICATION,
            ResourceType.CLINICAL_IMPRESSION,
            ResourceType.PERSON,
            ResourceType.MEDIA,
        ]
        assert records[0].recipient[0].reference == "Patient/patient-1"
        assert records[1].assessor.reference == "Patient/patient-1"
        assert records[1].assessor.display == "Self-reported"
        assert records[2].name[0].text == "Test Contact"
        assert records[3].content.title == "Test media"

    def test_unbound_transformer_references_user(self):
        """Test that references fall back to the user id before binding."""
        transformer = ResourceTransformer(user_id="user-9")

        assert transformer.patient_reference().reference == "Patient/user-9"
