"""Archive Reader - assemble an import payload from an exported archive.

Reads every non-excluded ``.json`` entry of a zip archive or an extracted
directory (optionally restricted to a selection of entries) and merges what
each document contains into one payload with canonical keys::

    {"posts": [...], "friends": [...], "media": [...], "messages": [...],
     "experiences": {...}, "unrecognized_files": [...]}

A single ``.json`` file is returned as parsed, so already-merged payloads can
be imported directly.
"""

import json
import logging
import os
import zipfile
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from fhir_timeline.domain.exclusions import is_excluded
from fhir_timeline.domain.ports import SourceNotFoundError, UnsupportedSourceError
from fhir_timeline.domain.services.content_extractor import ContentExtractor

logger = logging.getLogger(__name__)

EXPERIENCE_KEYS = ('work', 'education', 'places_lived', 'relationship')


class ArchiveReader:
    """Build import payloads from zip archives, directories and JSON files.

    Parameters:
        extractor: Content extractor used to recognise each document's records

    Example Usage:
        ```python
        reader = ArchiveReader()
        payload = reader.load("facebook-export.zip")
        payload = reader.load("export/", selected_files=["posts/your_posts_1.json"])
        ```
    """

    def __init__(self, extractor: Optional[ContentExtractor] = None):
        self.extractor = extractor or ContentExtractor()

    def load(self, path: str, selected_files: Optional[Iterable[str]] = None) -> Any:
        """Load an archive into a single payload.

        Parameters:
            path: Zip file, directory, or JSON file
            selected_files: Relative entry paths to read (all when None)

        Returns:
            Any: Merged payload dict, or the parsed document for a JSON file

        Raises:
            SourceNotFoundError: If the path does not exist
            UnsupportedSourceError: If the path is not a zip, directory or JSON file
            ValueError: If a single JSON file cannot be parsed
        """
        source = Path(path)
        if not source.exists():
            raise SourceNotFoundError(f"Archive not found: {path}", source=str(path))

        selection = set(selected_files) if selected_files is not None else None

        if source.is_dir():
            documents = self._iter_directory(source, selection)
        elif zipfile.is_zipfile(source):
            documents = self._iter_zip(source, selection)
        elif source.suffix.lower() == '.json':
            try:
                with open(source, 'r', encoding='utf-8') as f:
                    return json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {path}: {str(e)}")
        else:
            raise UnsupportedSourceError(
                f"Unsupported archive type: {path}",
                source=str(path),
                adapter="archive_reader",
            )

        payload: dict = {}
        for relative_path, raw in documents:
            document = self._parse(relative_path, raw)
            if document is not None:
                self.merge_document(payload, relative_path, document)

        logger.info(
            f"Loaded archive {source.name}: "
            + ", ".join(f"{key}={len(value)}" for key, value in payload.items() if isinstance(value, list))
        )
        return payload

    def merge_document(self, payload: dict, relative_path: str, document: Any) -> None:
        """Merge one parsed document into the payload under canonical keys."""
        recognised = False
        for key, records in (
            ('posts', self.extractor.extract_posts(document)),
            ('friends', self.extractor.extract_friends(document)),
            ('media', self.extractor.extract_media(document)),
            ('messages', self.extractor.extract_messages(document)),
        ):
            if records:
                payload.setdefault(key, []).extend(records)
                recognised = True

        experiences = self._experiences(document)
        if experiences:
            payload.setdefault('experiences', {}).update(experiences)
            recognised = True

        if not recognised:
            payload.setdefault('unrecognized_files', []).append(relative_path)

    @staticmethod
    def _experiences(document: Any) -> Optional[dict]:
        if not isinstance(document, dict):
            return None
        if isinstance(document.get('experiences'), dict):
            return document['experiences']
        profile = document.get('profile_v2')
        if isinstance(profile, dict):
            found = {key: profile[key] for key in EXPERIENCE_KEYS if profile.get(key)}
            return found or None
        return None

    @staticmethod
    def _parse(relative_path: str, raw: bytes) -> Any:
        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unparseable archive entry {relative_path}: {str(e)}")
            return None

    @staticmethod
    def _wanted(relative_path: str, selection: Optional[set]) -> bool:
        if not relative_path.lower().endswith('.json') or is_excluded(relative_path):
            return False
        return selection is None or relative_path in selection

    def _iter_zip(self, source: Path, selection: Optional[set]) -> Iterator[tuple[str, bytes]]:
        with zipfile.ZipFile(source) as archive:
            for info in archive.infolist():
                if info.is_dir() or not self._wanted(info.filename, selection):
                    continue
                yield info.filename, archive.read(info)

    def _iter_directory(self, root: Path, selection: Optional[set]) -> Iterator[tuple[str, bytes]]:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                full_path = Path(dirpath) / filename
                relative_path = full_path.relative_to(root).as_posix()
                if self._wanted(relative_path, selection):
                    yield relative_path, full_path.read_bytes()
