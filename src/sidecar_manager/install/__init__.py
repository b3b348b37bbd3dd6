"""Runtime acquisition: release manifest lookup and installer."""

from .installer import ActivityState, InstallActivity, Installer
from .manifest import current_platform, get_release_asset, load_manifest

__all__ = [
    "ActivityState",
    "InstallActivity",
    "Installer",
    "current_platform",
    "get_release_asset",
    "load_manifest",
]
