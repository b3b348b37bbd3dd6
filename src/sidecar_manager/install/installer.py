"""Runtime installer.

sidecar-manager install module

Resolves a runtime version from the release manifest and makes its binary
available under ``<runtime_root>/<safe_version>/``:

1. Fast path: binary already on disk -> make executable, mark active
2. Stage into ``<runtime_root>/.staging-<ms>-<safe_version>-<id>``
3. Primary build: ``cargo install --git <repo> --locked <ref> <package>``
4. Fallback: download the source archive (SHA-256 verified when the
   manifest has a checksum), extract it and build from the local path
5. Promote the staged tree by remove-then-rename of the version root
6. Re-verify and register the Installation as active

Every subprocess line is captured into the bounded InstallActivity log with
the phase that produced it; this is the only progress surface during a
multi-minute build.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import shutil
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import aiohttp

from ..errors import ChecksumMismatchError, InstallError, ManifestError
from ..models import (
    ActionResult,
    Installation,
    InstallationStatus,
    InstallSource,
    InstallState,
    InstallStatus,
    ReleaseAsset,
    ReleaseManifest,
    utcnow,
)
from ..runtime.process_runner import ProcessRunner, ProcessSpec
from ..store.base import RuntimeStore
from .manifest import (
    DEFAULT_BINARY_PATH,
    DEFAULT_BUILD_PACKAGE,
    current_platform,
    get_release_asset,
    load_manifest,
)

__all__ = [
    "Installer",
    "InstallActivity",
    "ActivityState",
    "MAX_ACTIVITY_LINES",
    "version_to_safe_dir",
    "build_ref_args",
]

logger = logging.getLogger(__name__)

MAX_ACTIVITY_LINES = 600
DOWNLOAD_TIMEOUT = 300.0
_SAFE_DIR_RE = re.compile(r"[^a-zA-Z0-9._-]+")
_COMMIT_RE = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)


class ActivityState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class InstallActivity:
    """Session-scoped progress of the current (or last) install.

    Attributes:
        state: idle / running / success / error
        phase: Tag of the step currently executing
        target_version: Version being installed
        lines: Bounded FIFO log of ``[phase] line`` entries
        started_at: When the install began
        completed_at: When it finished (success or error)
        last_error: Failure message, if any
    """

    state: ActivityState = ActivityState.IDLE
    phase: str = "idle"
    target_version: str | None = None
    lines: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_ACTIVITY_LINES))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    def append(self, phase: str, line: str) -> None:
        self.phase = phase
        text = line.rstrip()
        if text:
            self.lines.append(f"[{phase}] {text}")

    def snapshot(self) -> InstallActivity:
        """Detached copy safe to hand to callers."""
        return InstallActivity(
            state=self.state,
            phase=self.phase,
            target_version=self.target_version,
            lines=deque(self.lines, maxlen=MAX_ACTIVITY_LINES),
            started_at=self.started_at,
            completed_at=self.completed_at,
            last_error=self.last_error,
        )


def version_to_safe_dir(version: str) -> str:
    """Collapse anything outside ``[a-zA-Z0-9._-]`` into ``_``."""
    return _SAFE_DIR_RE.sub("_", version.strip())


def build_ref_args(asset: ReleaseAsset) -> list[str]:
    """``--rev`` for commit hashes, ``--branch`` for anything else."""
    if not asset.build_ref:
        return []
    if _COMMIT_RE.match(asset.build_ref):
        return ["--rev", asset.build_ref]
    return ["--branch", asset.build_ref]


def _file_sha256(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class Installer:
    """Installs, verifies and reports on runtime versions.

    Example:
        installer = Installer(store, runtime_root=Path("~/.sidecar-manager/runtime"))
        record = await installer.install_version("main")
        print(installer.get_install_activity().lines)
    """

    def __init__(
        self,
        store: RuntimeStore,
        runtime_root: Path,
        *,
        manifest_path: Path | None = None,
        source_repo: str = "https://github.com/openagen/zeroclaw",
        runner: ProcessRunner | None = None,
        platform: str | None = None,
    ) -> None:
        self.store = store
        self.runtime_root = runtime_root
        self.manifest_path = manifest_path
        self.source_repo = source_repo
        self.platform = platform or current_platform()
        self._runner = runner or ProcessRunner()
        self._activity = InstallActivity()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def load_manifest(self) -> ReleaseManifest:
        return load_manifest(self.manifest_path)

    def get_install_activity(self) -> InstallActivity:
        return self._activity.snapshot()

    def get_install_status(self, last_error: str | None = None) -> InstallStatus:
        """Derive installer state from the activity and stored installations."""
        installations = self.store.list_installations()
        manifest = self.load_manifest()
        active = next((entry for entry in installations if entry.is_active), None)
        error = last_error or (
            self._activity.last_error if self._activity.state == ActivityState.ERROR else None
        )

        if self._activity.state == ActivityState.RUNNING:
            state = InstallState.INSTALLING
        elif active is not None:
            state = InstallState.INSTALLED
        elif error:
            state = InstallState.ERROR
        else:
            state = InstallState.NOT_INSTALLED

        return InstallStatus(
            state=state,
            active_version=active.version if active else None,
            available_versions=list(dict.fromkeys(entry.version for entry in manifest.releases)),
            installations=installations,
            last_error=error,
            runtime_root=str(self.runtime_root),
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def resolve_version_root(self, version: str) -> Path:
        return self.runtime_root / version_to_safe_dir(version)

    def resolve_binary_path(self, version: str, asset: ReleaseAsset) -> Path:
        return self.resolve_version_root(version) / (
            asset.binary_relative_path or DEFAULT_BINARY_PATH
        )

    def _ensure_executable(self, path: Path) -> None:
        if not path.is_file():
            raise InstallError(f"Expected runtime binary missing at {path}")
        path.chmod(0o755)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_installed_version(self, version: str) -> ActionResult:
        """Check binary presence and checksum. Never raises."""
        asset = get_release_asset(self.load_manifest(), version, self.platform)
        if asset is None:
            return ActionResult(ok=False, message=f"No runtime manifest entry found for {version}.")

        binary_path = self.resolve_binary_path(version, asset)
        if not binary_path.is_file():
            return ActionResult(ok=False, message=f"Binary missing at {binary_path}.")

        if asset.source_sha256:
            digest = await asyncio.to_thread(_file_sha256, binary_path)
            if digest != asset.source_sha256:
                return ActionResult(
                    ok=False,
                    message=(
                        f"Checksum mismatch for {version}. "
                        f"Expected {asset.source_sha256}, got {digest}."
                    ),
                )

        return ActionResult(ok=True, message=f"Runtime {version} verified.")

    async def verify_active_installation(self) -> ActionResult:
        active = self.store.get_active_installation()
        if active is None:
            return ActionResult(ok=False, message="No active runtime installation.")
        return await self.verify_installed_version(active.version)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def upgrade(self, version: str) -> Installation:
        return await self.install_version(version)

    async def install_version(self, version: str | None = None) -> Installation:
        """Install ``version`` (default: manifest latest) and mark it active.

        Raises:
            ManifestError: No asset for the version on this platform
            InstallError: Build, download, extract or promote failed
        """
        async with self._lock:
            return await self._install_locked(version)

    async def _install_locked(self, version: str | None) -> Installation:
        manifest = self.load_manifest()
        target_version = version or manifest.latest_version

        self._activity = InstallActivity(
            state=ActivityState.RUNNING,
            phase="resolve",
            target_version=target_version,
            started_at=utcnow(),
        )
        self._activity.append("resolve", f"Resolving {target_version} for {self.platform}")

        asset = get_release_asset(manifest, target_version, self.platform)
        if asset is None:
            error = ManifestError(target_version, self.platform)
            self._finish_error(str(error))
            raise error

        version_root = self.resolve_version_root(target_version)
        binary_path = self.resolve_binary_path(target_version, asset)

        if binary_path.is_file():
            self._activity.append("reuse_existing", f"Found existing binary at {binary_path}")
            try:
                self._ensure_executable(binary_path)
            except (InstallError, OSError) as e:
                self._record_failure(target_version, asset, version_root, binary_path, e)
                raise
            record = self._register(target_version, asset, version_root, binary_path)
            self._finish_success(target_version)
            return record

        stage_dir = self.runtime_root / (
            f".staging-{int(time.time() * 1000)}-"
            f"{version_to_safe_dir(target_version)}-{uuid.uuid4().hex[:8]}"
        )

        try:
            stage_dir.mkdir(parents=True, exist_ok=True)
            self._activity.append("stage", f"Staging into {stage_dir}")

            staged_binary = stage_dir / (asset.binary_relative_path or DEFAULT_BINARY_PATH)
            try:
                await self._install_via_cargo(stage_dir, asset)
            except InstallError as e:
                if not asset.source_url:
                    raise
                self._activity.append("cargo_install", str(e))
            if not staged_binary.is_file() and asset.source_url:
                self._activity.append(
                    "cargo_install", "Binary not produced, falling back to source archive"
                )
                await self._install_via_source_archive(stage_dir, asset)
            self._ensure_executable(staged_binary)

            self._activity.append("promote", f"Promoting {stage_dir.name} -> {version_root}")
            if version_root.exists():
                shutil.rmtree(version_root)
            os.replace(stage_dir, version_root)

            self._activity.append("verify", f"Verifying {binary_path}")
            self._ensure_executable(binary_path)

            record = self._register(target_version, asset, version_root, binary_path)
            self._finish_success(target_version)
            return record

        except InstallError as e:
            self._record_failure(target_version, asset, version_root, binary_path, e)
            raise

        except Exception as e:
            self._record_failure(target_version, asset, version_root, binary_path, e)
            raise InstallError(str(e) or type(e).__name__) from e

        except BaseException as e:
            # CancelledError / KeyboardInterrupt: record, then propagate unchanged
            self._record_failure(target_version, asset, version_root, binary_path, e)
            raise

        finally:
            if stage_dir.exists():
                self._activity.append("cleanup", f"Removing {stage_dir}")
                shutil.rmtree(stage_dir, ignore_errors=True)

    def _record_failure(
        self,
        version: str,
        asset: ReleaseAsset,
        version_root: Path,
        binary_path: Path,
        error: BaseException,
    ) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"[INSTALL] {version} failed: {message}")
        self.store.upsert_installation(
            Installation(
                version=version,
                source=InstallSource.MANAGED,
                install_path=str(version_root),
                binary_path=str(binary_path),
                checksum=asset.source_sha256,
                status=InstallationStatus.ERROR,
                last_error=message,
            )
        )
        self._finish_error(message)

    def _register(
        self,
        version: str,
        asset: ReleaseAsset,
        version_root: Path,
        binary_path: Path,
    ) -> Installation:
        self._activity.append("register", f"Registering {version} as active")
        record = self.store.upsert_installation(
            Installation(
                version=version,
                source=InstallSource.MANAGED,
                install_path=str(version_root),
                binary_path=str(binary_path),
                checksum=asset.source_sha256,
                status=InstallationStatus.INSTALLED,
                is_active=True,
            )
        )
        self.store.set_active_installation(version)
        return record

    def _finish_success(self, version: str) -> None:
        self._activity.append("done", f"Runtime {version} installed")
        self._activity.state = ActivityState.SUCCESS
        self._activity.completed_at = utcnow()
        self._activity.last_error = None
        logger.info(f"[INSTALL] Runtime {version} installed")

    def _finish_error(self, message: str) -> None:
        self._activity.state = ActivityState.ERROR
        self._activity.completed_at = utcnow()
        self._activity.last_error = message
        self._activity.lines.append(f"[{self._activity.phase}] error: {message}")

    async def _run_phase(self, phase: str, spec: ProcessSpec) -> None:
        self._activity.append(phase, "$ " + " ".join(spec.argv))
        try:
            result = await self._runner.run(
                spec, on_line=lambda _stream, line: self._activity.append(phase, line)
            )
        except FileNotFoundError as e:
            raise InstallError(f"{spec.argv[0]} not found: {e}") from e
        if result.code != 0:
            raise InstallError(f"{phase} failed (exit {result.code}): {result.output}")

    async def _install_via_cargo(self, stage_dir: Path, asset: ReleaseAsset) -> None:
        package = asset.build_package or DEFAULT_BUILD_PACKAGE
        argv = [
            "cargo", "install",
            "--git", self.source_repo,
            "--locked",
            *build_ref_args(asset),
            package,
            "--root", str(stage_dir),
            "--force",
        ]
        self.runtime_root.mkdir(parents=True, exist_ok=True)
        await self._run_phase("cargo_install", ProcessSpec(argv=argv, cwd=self.runtime_root))

    async def _install_via_source_archive(self, stage_dir: Path, asset: ReleaseAsset) -> None:
        if not asset.source_url:
            raise InstallError("sourceUrl missing in release manifest.")
        archive_path = stage_dir / "runtime-source.tar.gz"

        self._activity.append("download_source", f"GET {asset.source_url}")
        timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(asset.source_url) as response:
                if response.status >= 400:
                    raise InstallError(
                        f"Failed to download runtime source archive: HTTP {response.status}"
                    )
                with open(archive_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(64 * 1024):
                        f.write(chunk)
        self._activity.append(
            "download_source", f"Saved {archive_path.stat().st_size} bytes"
        )

        if asset.source_sha256:
            self._activity.append("verify_source", "Checking archive SHA-256")
            digest = await asyncio.to_thread(_file_sha256, archive_path)
            if digest != asset.source_sha256:
                raise ChecksumMismatchError(asset.source_sha256, digest)

        unpack_dir = stage_dir / "src"
        unpack_dir.mkdir(parents=True, exist_ok=True)
        await self._run_phase(
            "extract_source",
            ProcessSpec(argv=["tar", "-xzf", str(archive_path), "-C", str(unpack_dir)]),
        )

        source_root = self._find_source_root(unpack_dir)
        argv = [
            "cargo", "install",
            "--path", str(source_root),
            "--locked",
            "--root", str(stage_dir),
            "--force",
        ]
        await self._run_phase("cargo_build_source", ProcessSpec(argv=argv, cwd=source_root))

    def _find_source_root(self, unpack_dir: Path) -> Path:
        """Archives usually wrap the tree in one top-level directory."""
        if (unpack_dir / "Cargo.toml").is_file():
            return unpack_dir
        for child in sorted(unpack_dir.iterdir()):
            if child.is_dir() and (child / "Cargo.toml").is_file():
                return child
        raise InstallError("Unexpected source archive structure.")
