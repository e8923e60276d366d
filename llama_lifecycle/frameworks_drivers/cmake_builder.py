"""
Source builds of llama-server with CMake.
"""
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from llama_lifecycle.entities.toolchain import ComputeBackend
from llama_lifecycle.shared.errors import BuildFailed, BuildUnavailable
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.platform_utils import PlatformUtils

logger = Logger.get(__name__)

MIN_CMAKE_VERSION = (3, 15)
BUILD_TARGET = "llama-server"


class CMakeBuilder:
    """Configures and builds the llama-server target from a llama.cpp source tree."""

    def __init__(self, build_timeout: float = 3600.0, jobs: Optional[int] = None):
        self.build_timeout = build_timeout
        self.jobs = jobs or os.cpu_count() or 1

    @staticmethod
    def cmake_version() -> Optional[tuple[int, int]]:
        """Installed cmake version as (major, minor), None if cmake is missing."""
        if shutil.which("cmake") is None:
            return None
        try:
            result = subprocess.run(["cmake", "--version"], check=False, capture_output=True, text=True)
        except OSError:
            return None
        match = re.search(r"(\d+)\.(\d+)", result.stdout or "")
        if result.returncode != 0 or not match:
            return None
        return int(match.group(1)), int(match.group(2))

    def check_requirements(self) -> None:
        """Raise BuildUnavailable if the host cannot build llama.cpp."""
        version = self.cmake_version()
        if version is None:
            raise BuildUnavailable("cmake is required to build llama.cpp from source")
        if version < MIN_CMAKE_VERSION:
            required = ".".join(str(v) for v in MIN_CMAKE_VERSION)
            raise BuildUnavailable(f"cmake >= {required} required, found {version[0]}.{version[1]}")

    @staticmethod
    def base_args(backend: ComputeBackend) -> List[str]:
        args = ["-DGGML_RPC=OFF", "-DLLAMA_CURL=OFF", "-DLLAMA_LLGUIDANCE=ON"]
        if backend == ComputeBackend.CUDA:
            args.append("-DGGML_CUDA=ON")
        args.append("-DGGML_METAL=ON" if backend == ComputeBackend.METAL else "-DGGML_METAL=OFF")
        if PlatformUtils.is_macos():
            args.append("-DBUILD_SHARED_LIBS=OFF")
        return args

    def _run(self, cmd: List[str], cwd: Path) -> None:
        logger.info(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, cwd=cwd, check=False, capture_output=True, text=True,
                                    timeout=self.build_timeout)
        except subprocess.TimeoutExpired as e:
            raise BuildFailed(" ".join(cmd), f"timed out after {self.build_timeout:.0f}s") from e
        except OSError as e:
            raise BuildFailed(" ".join(cmd), str(e)) from e
        if result.returncode != 0:
            raise BuildFailed(" ".join(cmd), result.stderr or result.stdout or "")

    def build(self, source_dir: Path, backend: ComputeBackend, extra_args: Optional[List[str]] = None) -> Path:
        """
        Build llama-server inside source_dir.

        Args:
            source_dir: Root of an extracted llama.cpp source tree
            backend: Accelerator to compile for
            extra_args: Additional -D arguments appended after the defaults

        Returns:
            Path to the built executable

        Raises:
            BuildFailed: If configuring or building fails, or no executable is produced
        """
        self.check_requirements()
        configure = ["cmake", "-B", "build", *self.base_args(backend), *(extra_args or [])]
        self._run(configure, source_dir)
        build = ["cmake", "--build", "build", "--config", "Release", "-j", str(self.jobs), "-t", BUILD_TARGET]
        self._run(build, source_dir)

        executable = find_executable(source_dir / "build")
        if executable is None:
            raise BuildFailed(" ".join(build), f"{PlatformUtils.server_executable_name()} not found after build")
        return executable


def find_executable(root: Path, name: Optional[str] = None) -> Optional[Path]:
    """Find the llama-server executable below root, preferring the shallowest match."""
    name = name or PlatformUtils.server_executable_name()
    matches = sorted((p for p in root.rglob(name) if p.is_file()), key=lambda p: len(p.parts))
    return matches[0] if matches else None
