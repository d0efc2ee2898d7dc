"""IPA discovery.

Lists the .ipa files in a directory (non-recursive), reads their metadata
and returns them newest first. An archive whose metadata cannot be read is
still returned, with synthesized metadata, so it stays selectable.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import IPA_EXTENSION
from ipa.metadata import AppMetadata, ExtractionError, extract_metadata

logger = logging.getLogger(__name__)

FALLBACK_VERSION = '1.0.0'
FALLBACK_BUILD = '1'


@dataclass(frozen=True)
class ArchiveInfo:
    """One discovered application package."""

    path: Path
    bundle_id: str
    version: str
    display_name: str
    size: int
    modified_time: datetime
    build_number: Optional[str] = None


def fallback_metadata(ipa_path: Path) -> AppMetadata:
    """Synthesize metadata from the file name."""
    name = ipa_path.stem
    return AppMetadata(
        bundle_id=f"com.unknown.{name}",
        version=FALLBACK_VERSION,
        display_name=name,
        build_number=FALLBACK_BUILD,
    )


def _list_candidates(directory: Path) -> list[Path]:
    """List .ipa files directly inside directory, sorted by name."""
    return sorted(
        p for p in directory.iterdir()
        if p.suffix.lower() == IPA_EXTENSION and p.is_file()
    )


def find_ipa_files(directory: Path, ipa_path: Optional[Path] = None) -> list[ArchiveInfo]:
    """Discover IPA files and their metadata.

    Args:
        directory: Directory to scan (non-recursive)
        ipa_path: Explicit IPA to use instead of scanning

    Returns:
        ArchiveInfo list sorted by modification time, newest first. Ties keep
        enumeration (name) order. Empty if nothing was found.
    """
    if ipa_path is not None:
        candidates = [Path(ipa_path)]
    else:
        logger.debug("Searching for IPA files in %s", directory)
        candidates = _list_candidates(Path(directory))

    found = []
    for path in candidates:
        try:
            stat = path.stat()
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            continue

        try:
            meta = extract_metadata(path)
        except (ExtractionError, OSError) as e:
            logger.warning("Failed to extract metadata from %s: %s", path.name, e)
            meta = fallback_metadata(path)
            logger.info("Using fallback metadata for %s", path.name)

        found.append(ArchiveInfo(
            path=path.resolve(),
            bundle_id=meta.bundle_id,
            version=meta.version,
            display_name=meta.display_name,
            build_number=meta.build_number,
            size=stat.st_size,
            modified_time=datetime.fromtimestamp(stat.st_mtime),
        ))

    # sort() is stable, reverse=True included
    found.sort(key=lambda info: info.modified_time, reverse=True)

    logger.info("Found %d IPA file(s)", len(found))
    return found
