"""Tests for ipa/metadata.py - Info.plist extraction."""

import plistlib
import sys
import zipfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ipa.metadata import (
    AppMetadata,
    ExtractionError,
    extract_metadata,
    find_info_plist,
    parse_plist,
    UNKNOWN_DISPLAY_NAME,
)
from conftest import write_ipa


class TestParsePlist:
    """Tests for parse_plist encoding detection."""

    def test_xml_plist(self):
        """XML plists are decoded."""
        data = plistlib.dumps({"CFBundleIdentifier": "com.x.y"}, fmt=plistlib.FMT_XML)
        assert data.startswith(b"<?xml")
        assert parse_plist(data) == {"CFBundleIdentifier": "com.x.y"}

    def test_binary_plist(self):
        """Binary plists (bplist magic) are decoded."""
        data = plistlib.dumps({"CFBundleIdentifier": "com.x.y"}, fmt=plistlib.FMT_BINARY)
        assert data[:3] == bytes([0x62, 0x70, 0x6C])
        assert parse_plist(data) == {"CFBundleIdentifier": "com.x.y"}

    def test_garbage_raises(self):
        """Bytes that are neither encoding raise ExtractionError."""
        with pytest.raises(ExtractionError):
            parse_plist(b"this is not a plist")

    def test_truncated_binary_raises(self):
        """A binary plist cut short raises ExtractionError."""
        data = plistlib.dumps({"a": "b"}, fmt=plistlib.FMT_BINARY)
        with pytest.raises(ExtractionError):
            parse_plist(data[:10])

    def test_non_utf8_xml_raises(self):
        """XML that is not UTF-8 raises ExtractionError."""
        with pytest.raises(ExtractionError):
            parse_plist(b"<?xml version='1.0'?>\xff\xfe<plist/>")

    def test_non_dict_root_raises(self):
        """A plist whose root is not a dict raises ExtractionError."""
        data = plistlib.dumps(["a", "b"], fmt=plistlib.FMT_XML)
        with pytest.raises(ExtractionError) as exc_info:
            parse_plist(data)
        assert "not a dict" in str(exc_info.value)


class TestFindInfoPlist:
    """Tests for find_info_plist entry lookup."""

    def test_finds_app_info_plist(self, tmp_path):
        """Finds Payload/<name>.app/Info.plist."""
        path = write_ipa(tmp_path / "a.ipa", {"CFBundleIdentifier": "x"}, app_name="Foo")
        with zipfile.ZipFile(path) as zf:
            assert find_info_plist(zf) == "Payload/Foo.app/Info.plist"

    def test_ignores_framework_info_plist(self, tmp_path):
        """Framework and extension Info.plist entries do not match."""
        path = write_ipa(
            tmp_path / "a.ipa",
            {"CFBundleIdentifier": "x"},
            app_name="Foo",
            extra_entries={
                "Payload/Foo.app/Frameworks/Bar.framework/Info.plist": b"x",
                "Payload/Foo.app/PlugIns/Ext.appex/Info.plist": b"x",
            },
        )
        with zipfile.ZipFile(path) as zf:
            assert find_info_plist(zf) == "Payload/Foo.app/Info.plist"

    def test_missing_raises(self, tmp_path):
        """No matching entry raises ExtractionError."""
        path = write_ipa(tmp_path / "a.ipa", None)
        with zipfile.ZipFile(path) as zf:
            with pytest.raises(ExtractionError) as exc_info:
                find_info_plist(zf)
        assert "Info.plist not found" in str(exc_info.value)

    def test_first_match_wins_even_if_nested(self, tmp_path):
        """With several app bundles, archive order decides, not nesting depth.

        A watch app stored before the main app's Info.plist is picked.
        """
        watch = plistlib.dumps({
            "CFBundleIdentifier": "com.x.y.watchkitapp",
            "CFBundleShortVersionString": "2.3",
        })
        path = write_ipa(
            tmp_path / "a.ipa",
            {"CFBundleIdentifier": "com.x.y", "CFBundleShortVersionString": "2.3"},
            app_name="Main",
            extra_entries={"Payload/Main.app/Watch/Main WatchKit App.app/Info.plist": watch},
        )
        assert extract_metadata(path).bundle_id == "com.x.y.watchkitapp"


class TestExtractMetadata:
    """Tests for extract_metadata."""

    def test_xml_info_plist(self, tmp_path):
        """XML Info.plist yields bundle id and short version."""
        path = write_ipa(tmp_path / "a.ipa", {
            "CFBundleIdentifier": "com.x.y",
            "CFBundleShortVersionString": "2.3",
        })
        meta = extract_metadata(path)
        assert meta.bundle_id == "com.x.y"
        assert meta.version == "2.3"

    def test_binary_matches_xml(self, tmp_path, info_plist):
        """Binary and XML encodings of the same plist give identical results."""
        xml_path = write_ipa(tmp_path / "xml.ipa", info_plist, fmt=plistlib.FMT_XML)
        bin_path = write_ipa(tmp_path / "bin.ipa", info_plist, fmt=plistlib.FMT_BINARY)
        assert extract_metadata(xml_path) == extract_metadata(bin_path)

    def test_all_fields(self, tmp_path, info_plist):
        """All fields are read from their primary keys."""
        meta = extract_metadata(write_ipa(tmp_path / "a.ipa", info_plist))
        assert meta == AppMetadata(
            bundle_id="com.x.y",
            version="2.3",
            display_name="Demo App",
            build_number="45",
        )

    def test_version_falls_back_to_bundle_version(self, tmp_path):
        """CFBundleVersion is used when CFBundleShortVersionString is absent."""
        meta = extract_metadata(write_ipa(tmp_path / "a.ipa", {
            "CFBundleIdentifier": "com.x.y",
            "CFBundleVersion": "17",
        }))
        assert meta.version == "17"
        assert meta.build_number == "17"

    def test_display_name_falls_back_to_bundle_name(self, tmp_path):
        """CFBundleName is used when CFBundleDisplayName is absent."""
        meta = extract_metadata(write_ipa(tmp_path / "a.ipa", {
            "CFBundleIdentifier": "com.x.y",
            "CFBundleShortVersionString": "1.0",
            "CFBundleName": "Short",
        }))
        assert meta.display_name == "Short"

    def test_display_name_default(self, tmp_path):
        """Display name defaults to 'Unknown App'."""
        meta = extract_metadata(write_ipa(tmp_path / "a.ipa", {
            "CFBundleIdentifier": "com.x.y",
            "CFBundleShortVersionString": "1.0",
        }))
        assert meta.display_name == UNKNOWN_DISPLAY_NAME
        assert meta.build_number is None

    def test_empty_display_name_falls_through(self, tmp_path):
        """An empty CFBundleDisplayName counts as missing."""
        meta = extract_metadata(write_ipa(tmp_path / "a.ipa", {
            "CFBundleIdentifier": "com.x.y",
            "CFBundleShortVersionString": "1.0",
            "CFBundleDisplayName": "",
            "CFBundleName": "Named",
        }))
        assert meta.display_name == "Named"

    def test_missing_bundle_id_raises(self, tmp_path):
        """Missing CFBundleIdentifier raises ExtractionError."""
        path = write_ipa(tmp_path / "a.ipa", {"CFBundleShortVersionString": "1.0"})
        with pytest.raises(ExtractionError) as exc_info:
            extract_metadata(path)
        assert "required metadata missing" in str(exc_info.value)

    def test_missing_version_raises(self, tmp_path):
        """Missing both version keys raises ExtractionError."""
        path = write_ipa(tmp_path / "a.ipa", {"CFBundleIdentifier": "com.x.y"})
        with pytest.raises(ExtractionError):
            extract_metadata(path)

    def test_missing_info_plist_raises(self, tmp_path):
        """Archive without Info.plist raises ExtractionError."""
        with pytest.raises(ExtractionError):
            extract_metadata(write_ipa(tmp_path / "a.ipa", None))

    def test_not_a_zip_raises(self, tmp_path):
        """Non-zip file raises ExtractionError."""
        path = tmp_path / "a.ipa"
        path.write_bytes(b"definitely not a zip")
        with pytest.raises(ExtractionError) as exc_info:
            extract_metadata(path)
        assert "zip" in str(exc_info.value)
