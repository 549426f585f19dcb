"""Unit tests for ArchiveReader payload assembly."""

import json
import zipfile

import pytest

from fhir_timeline.adapters.archive.reader import ArchiveReader
from fhir_timeline.domain.ports import SourceNotFoundError, UnsupportedSourceError

POSTS = [
    {"timestamp": 1700000000, "data": [{"post": "I have a terrible headache today"}]},
    {"timestamp": 1700000100, "data": [{"post": "Back to work"}]},
]
FRIENDS = {"friends_v2": [{"name": "Alex Rivera", "timestamp": 1609459200}]}
THREAD = {
    "participants": [{"name": "Sam"}, {"name": "Jane"}],
    "messages": [
        {"sender_name": "Sam", "timestamp_ms": 1600000000000, "content": "How are you feeling?"},
        {"sender_name": "Jane", "timestamp_ms": 1600000060000, "content": "Much better"},
    ],
}
ALBUM = {"name": "Trips", "photos": [{"uri": "photos/1.jpg", "creation_timestamp": 1600000000}]}
PROFILE = {"profile_v2": {
    "name": {"full_name": "Jane Doe"},
    "relationship": {"status": "Married"},
    "places_lived": [{"name": "Springfield", "start_timestamp": 1262304000}],
}}

ENTRIES = {
    "your_facebook_activity/posts/your_posts_1.json": json.dumps(POSTS),
    "connections/friends/your_friends.json": json.dumps(FRIENDS),
    "messages/inbox/sam_1/message_1.json": json.dumps(THREAD),
    "photos_and_videos/album/0.json": json.dumps(ALBUM),
    "profile_information/profile_information.json": json.dumps(PROFILE),
    "events/your_events.json": json.dumps({"posts": POSTS}),
    "apps/apps.json": json.dumps({"installed_apps": []}),
    "broken/broken.json": "{not json",
    "photos_and_videos/album/1.jpg": "binary",
}


@pytest.fixture
def archive_zip(tmp_path):
    path = tmp_path / "export.zip"
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in ENTRIES.items():
            archive.writestr(name, data)
    return path


@pytest.fixture
def archive_dir(tmp_path):
    root = tmp_path / "export"
    for name, data in ENTRIES.items():
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(data)
    return root


class TestArchiveReaderLoad:
    """Test loading archives into a merged payload."""

    def test_zip_archive(self, archive_zip):
        """Test every recognized entry is merged under canonical keys."""
        payload = ArchiveReader().load(str(archive_zip))

        assert len(payload["posts"]) == 2
        assert payload["friends"][0]["name"] == "Alex Rivera"
        assert [m["content"] for m in payload["messages"]] == ["How are you feeling?", "Much better"]
        assert payload["media"][0]["uri"] == "photos/1.jpg"
        assert payload["experiences"]["relationship"] == {"status": "Married"}
        assert payload["experiences"]["places_lived"][0]["name"] == "Springfield"
        assert payload["unrecognized_files"] == ["apps/apps.json"]

    def test_directory_matches_zip(self, archive_zip, archive_dir):
        """Test a directory yields the same payload as the zip."""
        reader = ArchiveReader()

        from_zip = reader.load(str(archive_zip))
        from_dir = reader.load(str(archive_dir))

        assert from_dir["posts"] == from_zip["posts"]
        assert from_dir["messages"] == from_zip["messages"]
        assert from_dir["experiences"] == from_zip["experiences"]

    def test_excluded_files_are_not_read(self, archive_zip):
        """Test denylisted entries contribute nothing."""
        payload = ArchiveReader().load(str(archive_zip))

        # your_events.json carries two posts of its own
        assert len(payload["posts"]) == 2

    def test_selected_files(self, archive_zip):
        """Test restricting the load to selected entries."""
        payload = ArchiveReader().load(
            str(archive_zip),
            selected_files=["connections/friends/your_friends.json"],
        )

        assert list(payload) == ["friends"]

    def test_single_json_file(self, tmp_path):
        """Test a JSON file is returned as parsed."""
        path = tmp_path / "payload.json"
        path.write_text(json.dumps({"posts": POSTS}))

        assert ArchiveReader().load(str(path)) == {"posts": POSTS}

    def test_invalid_single_json_file(self, tmp_path):
        """Test an unparseable JSON file raises ValueError."""
        path = tmp_path / "payload.json"
        path.write_text("{nope")

        with pytest.raises(ValueError):
            ArchiveReader().load(str(path))

    def test_missing_source(self, tmp_path):
        """Test a missing path raises SourceNotFoundError."""
        with pytest.raises(SourceNotFoundError):
            ArchiveReader().load(str(tmp_path / "missing.zip"))

    def test_unsupported_source(self, tmp_path):
        """Test an unsupported file type raises UnsupportedSourceError."""
        path = tmp_path / "export.tar"
        path.write_text("not an archive")

        with pytest.raises(UnsupportedSourceError):
            ArchiveReader().load(str(path))


class TestMergeDocument:
    """Test merging single documents."""

    def test_lists_are_concatenated(self):
        """Test documents of the same kind accumulate."""
        reader = ArchiveReader()
        payload = {}

        reader.merge_document(payload, "posts/your_posts_1.json", POSTS)
        reader.merge_document(payload, "posts/your_posts_2.json", [POSTS[0]])

        assert len(payload["posts"]) == 3

    def test_experiences_key(self):
        """Test an explicit experiences document is merged."""
        payload = {}

        ArchiveReader().merge_document(payload, "experiences.json", {"experiences": {"work": [{"employer": "Acme"}]}})

        assert payload == {"experiences": {"work": [{"employer": "Acme"}]}}
