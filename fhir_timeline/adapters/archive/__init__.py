"""Archive adapters: scanning and reading exported social media archives."""

from fhir_timeline.adapters.archive.reader import ArchiveReader
from fhir_timeline.adapters.archive.scanner import (
    ArchiveInventory,
    ArchiveScanner,
    categorize_file,
    format_bytes,
    recommend_test_subset,
)

__all__ = [
    "ArchiveInventory",
    "ArchiveReader",
    "ArchiveScanner",
    "categorize_file",
    "format_bytes",
    "recommend_test_subset",
]
