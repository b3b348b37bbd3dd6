"""Release manifest lookup.

sidecar-manager install module

Maps (platform, version) to an installable ReleaseAsset. The manifest is a
JSON file with camelCase keys:

    {"latestVersion": "main",
     "releases": [{"platform": "darwin-arm64", "version": "main",
                   "sourceUrl": "...", "sourceSha256": "...",
                   "binaryRelativePath": "bin/zeroclaw",
                   "buildPackage": "zeroclaw", "buildRef": "main"}]}

A missing file, unparseable JSON, or a manifest with no valid releases
falls back to the built-in default that builds the ``main`` branch.
"""

from __future__ import annotations

import json
import logging
import platform as _platform
import sys
from pathlib import Path
from typing import Any

from ..models import ReleaseAsset, ReleaseManifest

__all__ = [
    "SUPPORTED_PLATFORMS",
    "DEFAULT_MANIFEST",
    "current_platform",
    "load_manifest",
    "get_release_asset",
]

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = frozenset({"darwin-arm64", "darwin-x64", "linux-arm64", "linux-x64"})

DEFAULT_SOURCE_URL = "https://codeload.github.com/openagen/zeroclaw/tar.gz/refs/heads/main"
DEFAULT_BINARY_PATH = "bin/zeroclaw"
DEFAULT_BUILD_PACKAGE = "zeroclaw"

DEFAULT_MANIFEST = ReleaseManifest(
    latest_version="main",
    releases=tuple(
        ReleaseAsset(
            platform=name,
            version="main",
            source_url=DEFAULT_SOURCE_URL,
            build_package=DEFAULT_BUILD_PACKAGE,
            build_ref="main",
            binary_relative_path=DEFAULT_BINARY_PATH,
        )
        for name in sorted(SUPPORTED_PLATFORMS)
    ),
)

# wire key -> model field; legacy cargo-specific names are accepted too
_FIELD_ALIASES = {
    "sourceUrl": "source_url",
    "sourceSha256": "source_sha256",
    "binaryRelativePath": "binary_relative_path",
    "buildPackage": "build_package",
    "cargoPackage": "build_package",
    "buildRef": "build_ref",
    "gitRef": "build_ref",
}


def current_platform() -> str:
    """Return the ``<os>-<arch>`` token for the running interpreter."""
    machine = _platform.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
    if sys.platform == "darwin":
        system = "darwin"
    elif sys.platform.startswith("linux"):
        system = "linux"
    else:
        system = sys.platform
    return f"{system}-{arch}"


def _parse_release_asset(value: Any) -> ReleaseAsset | None:
    if not isinstance(value, dict):
        return None
    platform_name = value.get("platform") if isinstance(value.get("platform"), str) else ""
    version = value["version"].strip() if isinstance(value.get("version"), str) else ""
    if platform_name not in SUPPORTED_PLATFORMS or not version:
        return None

    fields: dict[str, str] = {}
    for wire_key, field_name in _FIELD_ALIASES.items():
        raw = value.get(wire_key)
        if isinstance(raw, str) and field_name not in fields:
            fields[field_name] = raw
    return ReleaseAsset(platform=platform_name, version=version, **fields)


def load_manifest(path: Path | None = None) -> ReleaseManifest:
    """Load the release manifest, falling back to the built-in default.

    Args:
        path: Manifest JSON path (None = built-in default)

    Returns:
        Parsed ReleaseManifest
    """
    if path is None or not path.exists():
        return DEFAULT_MANIFEST

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to parse manifest {path}, using defaults: {e}")
        return DEFAULT_MANIFEST

    if not isinstance(parsed, dict):
        logger.warning(f"Manifest {path} is not a JSON object, using defaults")
        return DEFAULT_MANIFEST

    latest = parsed.get("latestVersion")
    latest_version = (
        latest.strip()
        if isinstance(latest, str) and latest.strip()
        else DEFAULT_MANIFEST.latest_version
    )
    raw_releases = parsed.get("releases")
    releases = [
        asset
        for asset in (_parse_release_asset(entry) for entry in raw_releases or [])
        if asset is not None
    ] if isinstance(raw_releases, list) else []

    return ReleaseManifest(
        latest_version=latest_version,
        releases=tuple(releases) if releases else DEFAULT_MANIFEST.releases,
    )


def get_release_asset(
    manifest: ReleaseManifest,
    version: str | None = None,
    platform: str | None = None,
) -> ReleaseAsset | None:
    """Find the asset for ``version`` (default: latest) on ``platform``."""
    target_version = version or manifest.latest_version
    target_platform = platform or current_platform()
    for asset in manifest.releases:
        if asset.platform == target_platform and asset.version == target_version:
            return asset
    return None
