"""IPA inspection package.

Reads app metadata out of .ipa archives and discovers archives on disk.
"""

from ipa.metadata import (
    AppMetadata,
    ExtractionError,
    extract_metadata,
)
from ipa.scanner import (
    ArchiveInfo,
    fallback_metadata,
    find_ipa_files,
)

__all__ = [
    # Metadata
    "AppMetadata",
    "ExtractionError",
    "extract_metadata",
    # Scanner
    "ArchiveInfo",
    "fallback_metadata",
    "find_ipa_files",
]
