"""
On-disk cache of llama-server builds keyed by ToolchainSpec.

Layout under the cache root::

    <root>/<project>/llama_cpp_<tag>_<backend>.lock   cross-process lock
    <root>/<project>/llama_cpp_<tag>_<backend>/
        bin-<id>/       promoted builds (never modified afterwards)
        state.json      fingerprint and failure counter
        tmp-<uuid>/     in-flight downloads and builds

Builds are assembled in a tmp directory and renamed onto a fresh bin-<id>/, so a
reader holding the entry lock never sees a partial build. state.json names the
current one; superseded versions are deleted once no server runs from them.
"""
import os
import shutil
import stat
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import filelock
from pydantic import ValidationError

from llama_lifecycle.entities.toolchain import (
    BuildMode,
    BuildStatus,
    CachedBuild,
    ComputeBackend,
    ToolchainSpec,
    ToolchainState,
)
from llama_lifecycle.frameworks_drivers.archive_fetcher import ArchiveFetcher
from llama_lifecycle.frameworks_drivers.cmake_builder import CMakeBuilder, find_executable
from llama_lifecycle.frameworks_drivers.config import ToolchainConfig
from llama_lifecycle.frameworks_drivers.pidfiles import PidFile
from llama_lifecycle.shared.errors import (
    AcquisitionError,
    BuildUnavailable,
    FileSystemError,
    IntegrityError,
    ResolveTimeout,
    Unsupported,
)
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.platform_utils import PlatformUtils

logger = Logger.get(__name__)

INSTALL_DIR_ENV = "LLAMA_CPP_INSTALL_DIR"
LLAMA_CPP_REPO_URL = "https://github.com/ggml-org/llama.cpp"
STATE_FILE = "state.json"
BIN_PREFIX = "bin-"

KNOWN_PLATFORMS = {"linux-x64", "linux-arm64", "macos-arm64", "macos-x64", "windows-x64", "windows-arm64"}

# (platform, backend) -> release asset suffix; pairs missing here are built from source
PREBUILT_ASSETS = {
    ("linux-x64", ComputeBackend.CPU): "ubuntu-x64",
    ("macos-arm64", ComputeBackend.CPU): "macos-arm64",
    ("macos-arm64", ComputeBackend.METAL): "macos-arm64",
    ("macos-x64", ComputeBackend.CPU): "macos-x64",
    ("windows-x64", ComputeBackend.CPU): "win-cpu-x64",
    ("windows-x64", ComputeBackend.CUDA): "win-cuda-12.4-x64",
}


class ToolchainStore:
    """
    Resolves ToolchainSpecs to verified llama-server executables, downloading
    prebuilt releases or building from source on first use.
    """

    _process_locks: Dict[str, threading.Lock] = {}
    _process_locks_guard = threading.Lock()

    def __init__(
        self,
        config: Optional[ToolchainConfig] = None,
        cache_root: Optional[str | Path] = None,
        fetcher: Optional[ArchiveFetcher] = None,
        builder: Optional[CMakeBuilder] = None,
    ):
        self.config = config or ToolchainConfig()
        self.root = self._resolve_root(cache_root)
        self.fetcher = fetcher or ArchiveFetcher()
        self.builder = builder or CMakeBuilder(build_timeout=self.config.build_timeout)

    def _resolve_root(self, cache_root: Optional[str | Path]) -> Path:
        base = cache_root or os.environ.get(INSTALL_DIR_ENV) or self.config.cache_root
        base_path = Path(base) if base else PlatformUtils.user_data_dir()
        root = base_path / self.config.project
        try:
            root.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise FileSystemError("create cache root", root, e) from e
        return root.resolve()

    # Layout

    def spec_for(self, backend: ComputeBackend, repo_tag: Optional[str] = None,
                 platform: Optional[str] = None) -> ToolchainSpec:
        return ToolchainSpec(
            repo_tag=repo_tag or self.config.repo_tag,
            backend=backend,
            platform=platform or PlatformUtils.host_platform(),
        )

    def entry_dir(self, spec: ToolchainSpec) -> Path:
        return self.root / spec.entry_name

    def lock_path(self, spec: ToolchainSpec) -> Path:
        return self.root / f"{spec.entry_name}.lock"

    @staticmethod
    def prebuilt_asset(spec: ToolchainSpec) -> Optional[str]:
        """
        Name of the published release archive for a spec.

        Returns:
            The asset file name, or None if the pair must be built from source

        Raises:
            Unsupported: If the platform/backend combination is not recognised
        """
        if spec.platform not in KNOWN_PLATFORMS:
            raise Unsupported(f"Unsupported platform: {spec.platform}")
        if spec.backend == ComputeBackend.METAL and spec.os_name != "macos":
            raise Unsupported(f"Metal builds are only available on macOS, not {spec.platform}")
        if spec.backend == ComputeBackend.CUDA and spec.os_name == "macos":
            raise Unsupported("CUDA builds are not available on macOS")
        suffix = PREBUILT_ASSETS.get((spec.platform, spec.backend))
        if suffix is None:
            return None
        return f"llama-{spec.repo_tag}-bin-{suffix}.zip"

    @staticmethod
    def prebuilt_url(spec: ToolchainSpec, asset: str) -> str:
        return f"{LLAMA_CPP_REPO_URL}/releases/download/{spec.repo_tag}/{asset}"

    @staticmethod
    def source_url(spec: ToolchainSpec) -> str:
        return f"{LLAMA_CPP_REPO_URL}/archive/refs/tags/{spec.repo_tag}.zip"

    # Locking and state

    @contextmanager
    def _locked(self, spec: ToolchainSpec) -> Iterator[None]:
        """Hold the in-process and cross-process locks of one cache entry."""
        lock_path = self.lock_path(spec)
        with self._process_locks_guard:
            thread_lock = self._process_locks.setdefault(str(lock_path), threading.Lock())

        if not thread_lock.acquire(timeout=self.config.lock_timeout):
            raise ResolveTimeout(f"Timed out waiting for {spec.entry_name} in this process")
        try:
            file_lock = filelock.FileLock(str(lock_path), timeout=self.config.lock_timeout)
            try:
                with file_lock:
                    yield
            except filelock.Timeout as e:
                raise ResolveTimeout(
                    f"Timed out after {self.config.lock_timeout:.0f}s waiting for another process to finish {spec.entry_name}"
                ) from e
        finally:
            thread_lock.release()

    def _load_state(self, spec: ToolchainSpec) -> ToolchainState:
        path = self.entry_dir(spec) / STATE_FILE
        fresh = ToolchainState(repo_tag=spec.repo_tag, backend=spec.backend, platform=spec.platform)
        if not path.exists():
            return fresh
        try:
            return ToolchainState.model_validate_json(path.read_text())
        except (ValidationError, ValueError, OSError) as e:
            logger.warning(f"Ignoring unreadable toolchain state {path}: {e}")
            return fresh

    def _save_state(self, spec: ToolchainSpec, state: ToolchainState) -> None:
        entry = self.entry_dir(spec)
        path = entry / STATE_FILE
        tmp = entry / f"{STATE_FILE}.{uuid.uuid4().hex}.tmp"
        try:
            entry.mkdir(parents=True, exist_ok=True)
            tmp.write_text(state.model_dump_json(indent=2))
            os.replace(tmp, path)
        except PermissionError as e:
            raise FileSystemError("write toolchain state", path, e) from e

    def _cached_build(self, spec: ToolchainSpec, state: ToolchainState, mode: BuildMode,
                      build_args: List[str]) -> Optional[CachedBuild]:
        if not state.matches(spec, mode, build_args) or not state.executable or not state.sha256:
            return None
        executable = Path(state.executable)
        if not executable.is_file():
            logger.warning(f"Recorded executable {executable} is missing")
            return None
        actual = self.fetcher.sha256_file(executable)
        if actual != state.sha256:
            logger.warning(f"Executable {executable} changed since it was cached ({actual} != {state.sha256})")
            return None
        return CachedBuild(
            spec=spec,
            executable=executable,
            sha256=state.sha256,
            created_at=state.created_at or datetime.now(timezone.utc),
            status=state.status,
            build_args=state.build_args,
        )

    def _prune_versions(self, spec: ToolchainSpec, current: Path) -> None:
        """Delete superseded bin-* directories that no live server was started from."""
        name = Path(PlatformUtils.server_executable_name()).stem
        for version in self.entry_dir(spec).glob(f"{BIN_PREFIX}*"):
            if version == current or not version.is_dir():
                continue
            live = [entry.pid for entry in PidFile.discover(version, name) if not PidFile.is_stale(entry.path)]
            if live:
                logger.info(f"Keeping {version.name} of {spec.entry_name}: servers {live} still run from it")
                continue
            logger.debug(f"Removing superseded {version}")
            shutil.rmtree(version, ignore_errors=True)

    def _purge_entry(self, spec: ToolchainSpec) -> None:
        entry = self.entry_dir(spec)
        if entry.exists():
            try:
                shutil.rmtree(entry)
            except PermissionError as e:
                raise FileSystemError("remove cache entry", entry, e) from e

    # Public operations

    def resolve(
        self,
        spec: ToolchainSpec,
        mode: Optional[BuildMode] = None,
        build_args: Optional[List[str]] = None,
        expected_sha256: Optional[str] = None,
    ) -> CachedBuild:
        """
        Return a verified build for spec, downloading or building it if needed.

        Args:
            spec: The build to resolve
            mode: Acquisition mode (defaults to the configured mode)
            build_args: Extra CMake arguments for source builds
            expected_sha256: Digest to verify a prebuilt archive against instead of the published one

        Returns:
            The cached build

        Raises:
            Unsupported: If the platform/backend combination is not recognised
            BuildUnavailable: If neither a prebuilt archive nor a source build succeeded
            IntegrityError: If a downloaded archive fails verification
        """
        mode = mode or self.config.mode
        build_args = list(self.config.build_args if build_args is None else build_args)
        self.prebuilt_asset(spec)

        with self._locked(spec):
            state = self._load_state(spec)
            cached = self._cached_build(spec, state, mode, build_args)
            if cached is not None:
                logger.debug(f"Using cached {spec.entry_name} at {cached.executable}")
                return cached

            if state.fail_count >= self.config.fail_limit:
                logger.warning(f"{spec.entry_name} failed {state.fail_count} times; purging cache entry")
                self._purge_entry(spec)
                state = ToolchainState(repo_tag=spec.repo_tag, backend=spec.backend, platform=spec.platform)

            try:
                build = self._acquire(spec, mode, build_args, expected_sha256)
            except AcquisitionError:
                state.fail_count += 1
                self._save_state(spec, state)
                raise

            self._save_state(spec, ToolchainState(
                repo_tag=spec.repo_tag,
                backend=spec.backend,
                platform=spec.platform,
                status=build.status,
                build_args=build.build_args,
                executable=str(build.executable),
                sha256=build.sha256,
                created_at=build.created_at,
                fail_count=0,
            ))
            self._prune_versions(spec, build.bin_dir)
            logger.info(f"Resolved {spec.entry_name} to {build.executable}")
            return build

    def validate(self, spec: ToolchainSpec, mode: BuildMode = BuildMode.BUILD_OR_INSTALL,
                 build_args: Optional[List[str]] = None) -> CachedBuild:
        """Return the cached build for spec without any network or build activity."""
        build_args = list(self.config.build_args if build_args is None else build_args)
        with self._locked(spec):
            cached = self._cached_build(spec, self._load_state(spec), mode, build_args)
        if cached is None:
            raise BuildUnavailable(f"No valid cached build for {spec.entry_name}")
        return cached

    def remove(self, spec: ToolchainSpec) -> bool:
        """Delete the cache entry of spec; returns False if there was none."""
        with self._locked(spec):
            existed = self.entry_dir(spec).exists()
            self._purge_entry(spec)
        if existed:
            logger.info(f"Removed {spec.entry_name}")
        return existed

    def list_builds(self) -> List[CachedBuild]:
        """All promoted builds under the cache root."""
        builds = []
        for state_path in sorted(self.root.glob(f"*/{STATE_FILE}")):
            try:
                state = ToolchainState.model_validate_json(state_path.read_text())
            except (ValidationError, ValueError, OSError):
                continue
            if state.status == BuildStatus.NOT_BUILT_OR_INSTALLED or not state.executable or not state.sha256:
                continue
            if not Path(state.executable).is_file():
                continue
            builds.append(CachedBuild(
                spec=ToolchainSpec(repo_tag=state.repo_tag, backend=state.backend, platform=state.platform),
                executable=Path(state.executable),
                sha256=state.sha256,
                created_at=state.created_at or datetime.now(timezone.utc),
                status=state.status,
                build_args=state.build_args,
            ))
        return builds

    def runtime_dirs(self) -> List[Path]:
        """Every promoted bin directory, superseded ones included."""
        return sorted(path for path in self.root.glob(f"*/{BIN_PREFIX}*") if path.is_dir())

    def register_custom(self, spec: ToolchainSpec, executable: str | Path) -> CachedBuild:
        """Record a user-supplied llama-server binary for spec."""
        path = Path(executable).resolve()
        if not path.is_file():
            raise FileSystemError("register custom executable", path)
        with self._locked(spec):
            build = CachedBuild(
                spec=spec,
                executable=path,
                sha256=self.fetcher.sha256_file(path),
                status=BuildStatus.CUSTOM_BIN_PATH,
            )
            self._save_state(spec, ToolchainState(
                repo_tag=spec.repo_tag,
                backend=spec.backend,
                platform=spec.platform,
                status=BuildStatus.CUSTOM_BIN_PATH,
                executable=str(path),
                sha256=build.sha256,
                created_at=build.created_at,
            ))
        return build

    # Acquisition

    def _acquire(self, spec: ToolchainSpec, mode: BuildMode, build_args: List[str],
                 expected_sha256: Optional[str]) -> CachedBuild:
        asset = self.prebuilt_asset(spec)
        prefer_prebuilt = mode == BuildMode.INSTALL_ONLY or (mode == BuildMode.BUILD_OR_INSTALL and not build_args)

        if prefer_prebuilt and asset is not None:
            try:
                return self._install_prebuilt(spec, asset, expected_sha256)
            except IntegrityError:
                raise
            except AcquisitionError as e:
                if mode == BuildMode.INSTALL_ONLY:
                    raise BuildUnavailable(f"Installing {asset} failed: {e}") from e
                logger.warning(f"Prebuilt install failed, building from source: {e}")
        elif mode == BuildMode.INSTALL_ONLY:
            raise BuildUnavailable(f"No prebuilt llama-server is published for {spec.platform}/{spec.backend.value}")

        try:
            return self._build_from_source(spec, build_args)
        except BuildUnavailable:
            raise
        except AcquisitionError as e:
            raise BuildUnavailable(f"Source build of {spec.entry_name} failed: {e}") from e

    def _new_work_dir(self, spec: ToolchainSpec) -> Path:
        work = self.entry_dir(spec) / f"tmp-{uuid.uuid4().hex}"
        try:
            work.mkdir(parents=True)
        except PermissionError as e:
            raise FileSystemError("create working directory", work, e) from e
        return work

    def _install_prebuilt(self, spec: ToolchainSpec, asset: str, expected_sha256: Optional[str]) -> CachedBuild:
        work = self._new_work_dir(spec)
        try:
            digest = expected_sha256 or self.fetcher.published_digest(spec.repo_tag, asset)
            if digest is None:
                if self.config.require_checksum:
                    raise IntegrityError(work / asset, None, None)
                logger.warning(f"No published checksum for {asset}; accepting unverified archive")

            zip_path = work / asset
            self.fetcher.download(self.prebuilt_url(spec, asset), zip_path, expected_sha256=digest)
            extracted = self.fetcher.extract(zip_path, work / "extract")
            executable = find_executable(extracted)
            if executable is None:
                raise BuildUnavailable(f"{asset} does not contain {PlatformUtils.server_executable_name()}")
            return self._promote(spec, executable, BuildStatus.INSTALLED, [])
        finally:
            shutil.rmtree(work, ignore_errors=True)

    def _build_from_source(self, spec: ToolchainSpec, build_args: List[str]) -> CachedBuild:
        self.builder.check_requirements()
        work = self._new_work_dir(spec)
        try:
            zip_path = work / f"llama.cpp-{spec.repo_tag}.zip"
            self.fetcher.download(self.source_url(spec), zip_path)
            source_dir = self.fetcher.extract(zip_path, work / "src")
            executable = self.builder.build(source_dir, spec.backend, build_args)
            return self._promote(spec, executable, BuildStatus.BUILT, build_args)
        finally:
            shutil.rmtree(work, ignore_errors=True)

    def _promote(self, spec: ToolchainSpec, executable: Path, status: BuildStatus,
                 build_args: List[str]) -> CachedBuild:
        """Atomically move the directory holding executable to a new bin-<id>/ of the entry."""
        bin_dir = self.entry_dir(spec) / f"{BIN_PREFIX}{uuid.uuid4().hex[:12]}"
        try:
            executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            os.replace(executable.parent, bin_dir)
        except PermissionError as e:
            raise FileSystemError("promote build", bin_dir, e) from e

        final = bin_dir / executable.name
        return CachedBuild(
            spec=spec,
            executable=final,
            sha256=self.fetcher.sha256_file(final),
            status=status,
            build_args=build_args,
        )
