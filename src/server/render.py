"""OTA manifest and install page generation.

Both artifacts come from a template with {{PLACEHOLDER}} markers. An
external template file is used when present, otherwise the built-in
default. Substitution is plain string replacement; values come from the
operator's own IPA and configuration.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ipa.scanner import ArchiveInfo

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.plist"
INSTALL_PAGE_FILENAME = "install.html"
MANIFEST_TEMPLATE = "manifest.plist.template"
INSTALL_PAGE_TEMPLATE = "install.html.template"

SIZE_UNITS = ("B", "KB", "MB", "GB")

DEFAULT_MANIFEST_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>items</key>
    <array>
        <dict>
            <key>assets</key>
            <array>
                <dict>
                    <key>kind</key>
                    <string>software-package</string>
                    <key>url</key>
                    <string>{{IPA_URL}}</string>
                </dict>
            </array>
            <key>metadata</key>
            <dict>
                <key>bundle-identifier</key>
                <string>{{BUNDLE_ID}}</string>
                <key>bundle-version</key>
                <string>{{VERSION}}</string>
                <key>kind</key>
                <string>software</string>
                <key>title</key>
                <string>{{TITLE}}</string>
            </dict>
        </dict>
    </array>
</dict>
</plist>
"""

DEFAULT_INSTALL_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Install {{APP_NAME}}</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, sans-serif; margin: 0; padding: 20px; background: #f5f5f7; }
        .container { max-width: 600px; margin: 0 auto; background: white; border-radius: 12px; padding: 30px; box-shadow: 0 4px 12px rgba(0,0,0,0.1); }
        .header { text-align: center; margin-bottom: 30px; }
        .app-name { font-size: 28px; font-weight: 600; color: #1d1d1f; margin: 0; }
        .version { font-size: 16px; color: #6e6e73; margin: 10px 0; }
        .install-btn { display: block; background: #007AFF; color: white; text-decoration: none; padding: 16px 24px; border-radius: 8px; text-align: center; font-size: 18px; font-weight: 500; margin: 30px 0; }
        .install-btn:hover { background: #0056CC; }
        .info { background: #f6f6f6; border-radius: 8px; padding: 16px; margin: 20px 0; }
        .info-item { margin: 8px 0; }
        .label { font-weight: 500; color: #1d1d1f; }
        .value { color: #6e6e73; }
        .hint { text-align: center; color: #6e6e73; font-size: 14px; margin-top: 30px; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1 class="app-name">{{APP_NAME}}</h1>
            <div class="version">Version {{VERSION}}</div>
        </div>

        <a href="{{INSTALL_URL}}" class="install-btn">Install App</a>

        <div class="info">
            <div class="info-item">
                <span class="label">Bundle ID:</span>
                <span class="value">{{BUNDLE_ID}}</span>
            </div>
            <div class="info-item">
                <span class="label">File Size:</span>
                <span class="value">{{FILE_SIZE}}</span>
            </div>
        </div>

        <p class="hint">Tap "Install App" above to install via iOS Safari</p>
    </div>
</body>
</html>
"""


@dataclass(frozen=True)
class ManifestData:
    """Values substituted into the OTA manifest."""

    bundle_id: str
    version: str
    title: str
    ipa_url: str
    icon_small_url: Optional[str] = None
    icon_large_url: Optional[str] = None


def build_install_url(base_url: str) -> str:
    """Return the itms-services link for the manifest served at base_url."""
    return f"itms-services://?action=download-manifest&url={base_url}/{MANIFEST_FILENAME}"


def format_file_size(size: int) -> str:
    """Format a byte count for humans: 1536 -> "1.5 KB", 1048576 -> "1 MB"."""
    if size == 0:
        return "0 B"

    index = 0
    while size >= 1024 ** (index + 1) and index < len(SIZE_UNITS) - 1:
        index += 1

    # Round half up to two decimals, drop trailing zeros
    value = int(size * 100 / 1024 ** index + 0.5) / 100
    return f"{value:g} {SIZE_UNITS[index]}"


def load_template(templates_dir: Optional[Path], name: str, default: str) -> str:
    """Read templates_dir/name, falling back to default if it is absent."""
    if templates_dir is not None:
        path = templates_dir / name
        try:
            template = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            pass
        else:
            logger.debug("Using template %s", path)
            return template
    return default


def substitute(template: str, values: dict[str, str]) -> str:
    """Replace every {{KEY}} in template with values[KEY]."""
    for key, value in values.items():
        template = template.replace("{{" + key + "}}", value)
    return template


def render_manifest(data: ManifestData, templates_dir: Optional[Path] = None) -> str:
    """Render the itms-services manifest plist."""
    template = load_template(templates_dir, MANIFEST_TEMPLATE, DEFAULT_MANIFEST_TEMPLATE)
    return substitute(template, {
        "BUNDLE_ID": data.bundle_id,
        "VERSION": data.version,
        "TITLE": data.title,
        "IPA_URL": data.ipa_url,
        "ICON_SMALL_URL": data.icon_small_url or "",
        "ICON_LARGE_URL": data.icon_large_url or "",
    })


def render_install_page(
    ipa: ArchiveInfo,
    install_url: str,
    templates_dir: Optional[Path] = None,
) -> str:
    """Render the human-facing install page."""
    template = load_template(templates_dir, INSTALL_PAGE_TEMPLATE, DEFAULT_INSTALL_TEMPLATE)
    return substitute(template, {
        "APP_NAME": ipa.display_name,
        "VERSION": ipa.version,
        "BUNDLE_ID": ipa.bundle_id,
        "INSTALL_URL": install_url,
        "FILE_SIZE": format_file_size(ipa.size),
    })


def write_artifact(path: Path, content: str) -> Path:
    """Write content to path via a temp file and rename.

    Readers see either the old file or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


def generate_manifest(data: ManifestData, dist_dir: Path, templates_dir: Optional[Path] = None) -> Path:
    """Render and write dist_dir/manifest.plist."""
    path = write_artifact(dist_dir / MANIFEST_FILENAME, render_manifest(data, templates_dir))
    logger.debug("Generated %s", path)
    return path


def generate_install_page(
    ipa: ArchiveInfo,
    install_url: str,
    dist_dir: Path,
    templates_dir: Optional[Path] = None,
) -> Path:
    """Render and write dist_dir/install.html."""
    path = write_artifact(dist_dir / INSTALL_PAGE_FILENAME, render_install_page(ipa, install_url, templates_dir))
    logger.debug("Generated %s", path)
    return path
