"""IPA metadata extraction.

Reads the application's Info.plist straight out of the IPA (a zip archive)
without unpacking it. Info.plist may be stored in either plist encoding:
- binary, starting with the magic bytes "bplist"
- XML, starting with "<?xml"

The first three bytes select the decoder; both produce the same dict.
"""

import logging
import plistlib
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from xml.parsers.expat import ExpatError

logger = logging.getLogger(__name__)

BINARY_PLIST_MAGIC = b'bpl'
INFO_PLIST_SUFFIX = '.app/Info.plist'
UNKNOWN_DISPLAY_NAME = 'Unknown App'


class ExtractionError(Exception):
    """IPA metadata could not be extracted."""


@dataclass(frozen=True)
class AppMetadata:
    """Identifying fields read from an app's Info.plist."""

    bundle_id: str
    version: str
    display_name: str
    build_number: Optional[str] = None


def find_info_plist(archive: zipfile.ZipFile) -> str:
    """Return the name of the first '*.app/Info.plist' entry in archive order.

    An IPA normally holds exactly one top-level app bundle. When it holds
    more (watch apps nested inside the main bundle, for instance) whichever
    entry comes first in the archive wins, top-level or not.

    Raises:
        ExtractionError: If no entry matches
    """
    for info in archive.infolist():
        if info.filename.endswith(INFO_PLIST_SUFFIX):
            return info.filename
    raise ExtractionError("Info.plist not found")


def parse_plist(data: bytes) -> dict:
    """Decode Info.plist bytes in either binary or XML encoding.

    Raises:
        ExtractionError: If the bytes are not a valid plist dict
    """
    fmt = plistlib.FMT_BINARY if data[:3] == BINARY_PLIST_MAGIC else plistlib.FMT_XML
    try:
        if fmt == plistlib.FMT_XML:
            # Info.plist XML is always UTF-8 text
            data.decode('utf-8')
        parsed = plistlib.loads(data, fmt=fmt)
    except (plistlib.InvalidFileException, ExpatError, UnicodeDecodeError,
            ValueError, TypeError, AttributeError, OverflowError) as e:
        raise ExtractionError(f"Invalid Info.plist: {e}") from e

    if not isinstance(parsed, dict):
        raise ExtractionError("Invalid Info.plist: top-level object is not a dict")
    return parsed


def _string_value(plist: dict, *keys: str) -> Optional[str]:
    """Return the first non-empty value among keys, as a string."""
    for key in keys:
        value = plist.get(key)
        if value is not None and value != '':
            return str(value)
    return None


def extract_metadata(ipa_path: Path) -> AppMetadata:
    """Extract bundle id, version, display name and build number from an IPA.

    Args:
        ipa_path: Path to the .ipa file

    Returns:
        AppMetadata for the app bundle

    Raises:
        ExtractionError: If the archive or its Info.plist is unreadable, or
            the bundle id or version is missing
    """
    try:
        with zipfile.ZipFile(ipa_path) as archive:
            entry = find_info_plist(archive)
            data = archive.read(entry)
    except zipfile.BadZipFile as e:
        raise ExtractionError(f"Not a valid zip archive: {e}") from e
    except (zlib.error, RuntimeError, NotImplementedError, EOFError) as e:
        # Corrupt deflate stream, encrypted entry, unsupported compression
        raise ExtractionError(f"Cannot read Info.plist: {e}") from e

    logger.debug("Reading %s from %s", entry, ipa_path)
    plist = parse_plist(data)

    bundle_id = _string_value(plist, 'CFBundleIdentifier')
    version = _string_value(plist, 'CFBundleShortVersionString', 'CFBundleVersion')
    if not bundle_id or not version:
        raise ExtractionError("required metadata missing")

    return AppMetadata(
        bundle_id=bundle_id,
        version=version,
        display_name=_string_value(plist, 'CFBundleDisplayName', 'CFBundleName') or UNKNOWN_DISPLAY_NAME,
        build_number=_string_value(plist, 'CFBundleVersion'),
    )
