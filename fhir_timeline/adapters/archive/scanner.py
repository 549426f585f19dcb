"""Archive Scanner.

Inventories an exported archive (``.zip`` file or extracted directory) without
parsing any of its JSON: every entry is categorized by a file-name heuristic,
denylisted entries are listed separately, and a subset small enough for a
quick test import is recommended.

Security Impact:
    - Scanning reads zip metadata only, never entry contents
    - Extraction rejects entries that would escape the working directory

Architecture:
    - Archive adapter (reads the filesystem); produces Pydantic inventory models
    - Categorization and recommendation are pure functions, tested directly
"""

import logging
import os
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from fhir_timeline.domain.enums import FileCategory
from fhir_timeline.domain.exclusions import excluded_pattern
from fhir_timeline.domain.ports import SourceNotFoundError, UnsupportedSourceError

logger = logging.getLogger(__name__)

DEFAULT_TEST_PARSE_SIZE = 100 * 1024 * 1024

# Categories considered for a test import, in priority order
RECOMMENDATION_PRIORITY = (
    FileCategory.DEMOGRAPHICS,
    FileCategory.FRIENDS,
    FileCategory.POSTS,
    FileCategory.MESSAGES,
    FileCategory.MEDIA,
)

_CATEGORY_RULES = (
    (FileCategory.DEMOGRAPHICS, ('profile', 'about')),
    (FileCategory.FRIENDS, ('friend',)),
    (FileCategory.POSTS, ('post', 'timeline', 'wall')),
    (FileCategory.MESSAGES, ('message', 'inbox')),
    (FileCategory.MEDIA, ('photo', 'video', 'media')),
)

_SIZE_UNITS = ('Bytes', 'KB', 'MB', 'GB', 'TB')


def format_bytes(size: int) -> str:
    """Render a byte count with 1024-based units, e.g. ``1.5 KB``."""
    if size <= 0:
        return '0 Bytes'
    index = 0
    scaled = float(size)
    while scaled >= 1024 and index < len(_SIZE_UNITS) - 1:
        scaled /= 1024
        index += 1
    value = f"{scaled:.2f}".rstrip('0').rstrip('.')
    return f"{value} {_SIZE_UNITS[index]}"


def categorize_file(path: str) -> FileCategory:
    """Categorize an archive entry by case-insensitive substrings of its path.

    Rules are tried in order on the whole relative path, directories
    included, for zip and directory scans alike. A folder name can therefore
    decide the category: ``about_you/friend_peer_group.json`` is demographics
    because ``about`` is checked before ``friend``, while the bare file name
    ``friend_peer_group.json`` is friends.
    """
    lowered = path.lower()
    for category, needles in _CATEGORY_RULES:
        if any(needle in lowered for needle in needles):
            return category
    return FileCategory.OTHER


class ArchiveFile(BaseModel):
    name: str
    path: str
    size: int = Field(..., ge=0)
    size_formatted: str
    category: FileCategory
    modified: Optional[datetime] = None


class ExcludedFile(BaseModel):
    name: str
    path: str
    size: int = Field(..., ge=0)
    reason: str


class ParseRecommendation(BaseModel):
    suggested: list[ArchiveFile] = Field(default_factory=list)
    reason: str = ''
    total_size: int = 0
    total_size_formatted: str = '0 Bytes'


class ArchiveSummary(BaseModel):
    total_files: int = 0
    total_size: int = 0
    total_size_formatted: str = '0 Bytes'
    excluded_files: int = 0
    test_parse_recommendation: Optional[ParseRecommendation] = None


class ArchiveInventory(BaseModel):
    """Result of scanning an archive.

    ``files`` and ``categories`` only contain non-excluded entries; excluded
    entries are listed in ``excluded`` with the reason.
    """

    source: str
    archive_size: Optional[int] = None
    files: list[ArchiveFile] = Field(default_factory=list)
    excluded: list[ExcludedFile] = Field(default_factory=list)
    categories: dict[FileCategory, list[ArchiveFile]] = Field(
        default_factory=lambda: {category: [] for category in FileCategory}
    )
    summary: ArchiveSummary = Field(default_factory=ArchiveSummary)

    def add_entry(self, name: str, path: str, size: int, modified: Optional[datetime] = None) -> None:
        pattern = excluded_pattern(path)
        if pattern is not None:
            self.excluded.append(ExcludedFile(
                name=name,
                path=path,
                size=size,
                reason=f"Matches excluded file '{pattern}'",
            ))
            return

        entry = ArchiveFile(
            name=name,
            path=path,
            size=size,
            size_formatted=format_bytes(size),
            category=categorize_file(path),
            modified=modified,
        )
        self.files.append(entry)
        self.categories[entry.category].append(entry)
        self.summary.total_files += 1
        self.summary.total_size += size


class ExtractedFile(BaseModel):
    original_path: str
    extracted_path: str
    size: int


class ExtractionResult(BaseModel):
    extract_path: str
    extracted_files: list[ExtractedFile] = Field(default_factory=list)


def recommend_test_subset(
    categories: dict[FileCategory, list[ArchiveFile]],
    budget: int = DEFAULT_TEST_PARSE_SIZE,
) -> ParseRecommendation:
    """Greedily pick files for a quick test import.

    Walks the priority categories in order, adding every file that still fits
    in ``budget``, and stops after a category once 80% of the budget is used.
    """
    recommendation = ParseRecommendation()

    for category in RECOMMENDATION_PRIORITY:
        for entry in categories.get(category, []):
            if recommendation.total_size + entry.size <= budget:
                recommendation.suggested.append(entry)
                recommendation.total_size += entry.size
        if recommendation.total_size >= budget * 0.8:
            break

    recommendation.total_size_formatted = format_bytes(recommendation.total_size)
    if not recommendation.suggested:
        recommendation.reason = (
            'All files are too large for test parsing. Consider processing in production mode.'
        )
    else:
        recommendation.reason = (
            f"Recommended {len(recommendation.suggested)} files "
            f"({recommendation.total_size_formatted}) for initial test parsing."
        )
    return recommendation


class ArchiveScanner:
    """Inventory zip archives and extracted archive directories.

    Parameters:
        test_parse_size: Byte budget for the recommended test subset
        working_directory: Root under which archives are extracted per job

    Example Usage:
        ```python
        scanner = ArchiveScanner()
        inventory = scanner.scan("facebook-export.zip")
        print(inventory.summary.test_parse_recommendation.reason)
        ```
    """

    def __init__(
        self,
        test_parse_size: int = DEFAULT_TEST_PARSE_SIZE,
        working_directory: Optional[str] = None,
    ):
        self.test_parse_size = test_parse_size
        self.working_directory = working_directory

    def scan(self, path: str) -> ArchiveInventory:
        """Scan a zip file or a directory.

        Raises:
            SourceNotFoundError: If the path does not exist
            UnsupportedSourceError: If the path is neither a zip nor a directory
        """
        source = Path(path)
        if not source.exists():
            raise SourceNotFoundError(f"Archive not found: {path}", source=str(path))
        if source.is_dir():
            return self.scan_directory(path)
        if zipfile.is_zipfile(source):
            return self.scan_zip_file(path)
        raise UnsupportedSourceError(
            f"Not a zip archive or directory: {path}",
            source=str(path),
            adapter="archive_scanner",
        )

    def scan_zip_file(self, path: str) -> ArchiveInventory:
        """Inventory a zip archive from its central directory.

        Raises:
            SourceNotFoundError: If the file does not exist
            zipfile.BadZipFile: If the file is not a readable zip archive
        """
        source = Path(path)
        if not source.is_file():
            raise SourceNotFoundError(f"File not found: {path}", source=str(path))

        inventory = ArchiveInventory(source=str(source), archive_size=source.stat().st_size)
        with zipfile.ZipFile(source) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                inventory.add_entry(
                    name=info.filename,
                    path=info.filename,
                    size=info.file_size,
                    modified=datetime(*info.date_time),
                )

        self._finalize(inventory)
        logger.info(
            f"Scanned zip {source.name}: {inventory.summary.total_files} files, "
            f"{len(inventory.excluded)} excluded, {inventory.summary.total_size_formatted}"
        )
        return inventory

    def scan_directory(self, path: str) -> ArchiveInventory:
        """Recursively inventory an extracted archive directory.

        Raises:
            SourceNotFoundError: If the directory does not exist
        """
        root = Path(path)
        if not root.is_dir():
            raise SourceNotFoundError(f"Directory not found: {path}", source=str(path))

        inventory = ArchiveInventory(source=str(root))
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                full_path = Path(dirpath) / filename
                stats = full_path.stat()
                inventory.add_entry(
                    name=filename,
                    path=full_path.relative_to(root).as_posix(),
                    size=stats.st_size,
                    modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
                )

        self._finalize(inventory)
        logger.info(
            f"Scanned directory {root}: {inventory.summary.total_files} files, "
            f"{len(inventory.excluded)} excluded, {inventory.summary.total_size_formatted}"
        )
        return inventory

    def extract_to_working(self, path: str, job_id: str) -> ExtractionResult:
        """Extract a zip archive to ``<working_directory>/<job_id>/extracted``.

        Raises:
            SourceNotFoundError: If the archive does not exist
            UnsupportedSourceError: If an entry would be written outside the
                extraction directory
        """
        source = Path(path)
        if not source.is_file():
            raise SourceNotFoundError(f"File not found: {path}", source=str(path))
        if not self.working_directory:
            raise ValueError("ArchiveScanner has no working_directory configured")

        extract_root = (Path(self.working_directory) / job_id / 'extracted').resolve()
        extract_root.mkdir(parents=True, exist_ok=True)
        result = ExtractionResult(extract_path=str(extract_root))

        with zipfile.ZipFile(source) as archive:
            for info in archive.infolist():
                target = (extract_root / info.filename).resolve()
                if target != extract_root and extract_root not in target.parents:
                    raise UnsupportedSourceError(
                        f"Archive entry escapes extraction directory: {info.filename}",
                        source=str(path),
                        adapter="archive_scanner",
                    )
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as src, open(target, 'wb') as dst:
                    while True:
                        chunk = src.read(1024 * 1024)
                        if not chunk:
                            break
                        dst.write(chunk)
                result.extracted_files.append(ExtractedFile(
                    original_path=info.filename,
                    extracted_path=str(target),
                    size=info.file_size,
                ))

        logger.info(f"Extracted {len(result.extracted_files)} files for job {job_id} to {extract_root}")
        return result

    def _finalize(self, inventory: ArchiveInventory) -> None:
        inventory.summary.total_size_formatted = format_bytes(inventory.summary.total_size)
        inventory.summary.excluded_files = len(inventory.excluded)
        inventory.summary.test_parse_recommendation = recommend_test_subset(
            inventory.categories, self.test_parse_size
        )
