from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_REPO_TAG = "b6097"


class ComputeBackend(str, Enum):
    """Concrete accelerator target a llama-server build is compiled for."""
    CPU = "cpu"
    CUDA = "cuda"
    METAL = "metal"


class ComputeBackendConfig(str, Enum):
    """Requested backend, resolved against the host into a ComputeBackend."""
    DEFAULT = "default"
    CPU = "cpu"
    CUDA = "cuda"
    CUDA_IF_AVAILABLE = "cuda_if_available"
    METAL = "metal"
    METAL_IF_AVAILABLE = "metal_if_available"


class BuildMode(str, Enum):
    BUILD_OR_INSTALL = "build_or_install"
    INSTALL_ONLY = "install_only"
    BUILD_ONLY = "build_only"


class BuildStatus(str, Enum):
    INSTALLED = "installed"
    BUILT = "built"
    CUSTOM_BIN_PATH = "custom_bin_path"
    NOT_BUILT_OR_INSTALLED = "not_built_or_installed"


class ToolchainSpec(BaseModel):
    """Immutable key identifying one cached build.

    Attributes:
        repo_tag: llama.cpp release tag, e.g. 'b6097'.
        backend: Accelerator target of the build.
        platform: Host platform identifier in the form '<os>-<arch>'.
    """

    model_config = ConfigDict(frozen=True)

    repo_tag: str = Field(DEFAULT_REPO_TAG, min_length=1)
    backend: ComputeBackend = ComputeBackend.CPU
    platform: str = Field(..., pattern=r"^[a-z0-9]+-[a-z0-9_]+$")

    @field_validator("repo_tag")
    @classmethod
    def validate_repo_tag(cls, v: str) -> str:
        if any(sep in v for sep in ("/", "\\", "..")) or v.strip() != v:
            raise ValueError(f"Invalid release tag: {v!r}")
        return v

    @property
    def os_name(self) -> str:
        return self.platform.split("-", 1)[0]

    @property
    def arch(self) -> str:
        return self.platform.split("-", 1)[1]

    @property
    def entry_name(self) -> str:
        """Directory name of this spec's cache entry."""
        return f"llama_cpp_{self.repo_tag}_{self.backend.value}"


class ToolchainState(BaseModel):
    """Persisted fingerprint and bookkeeping of one cache entry (state.json)."""
    repo_tag: str
    backend: ComputeBackend
    platform: str
    status: BuildStatus = BuildStatus.NOT_BUILT_OR_INSTALLED
    build_args: List[str] = Field(default_factory=list)
    executable: Optional[str] = None
    sha256: Optional[str] = None
    created_at: Optional[datetime] = None
    fail_count: int = Field(0, ge=0)

    def matches(self, spec: ToolchainSpec, mode: BuildMode, build_args: List[str]) -> bool:
        """
        Check whether this recorded state satisfies a resolve request.

        Build args are irrelevant for install-only requests; a custom binary
        satisfies any mode.
        """
        if (self.repo_tag, self.backend, self.platform) != (spec.repo_tag, spec.backend, spec.platform):
            return False
        if self.status == BuildStatus.CUSTOM_BIN_PATH:
            return True
        if self.status == BuildStatus.NOT_BUILT_OR_INSTALLED:
            return False
        if mode == BuildMode.INSTALL_ONLY:
            return self.status == BuildStatus.INSTALLED
        if mode == BuildMode.BUILD_ONLY:
            return self.status == BuildStatus.BUILT and self.build_args == build_args
        if self.status == BuildStatus.BUILT:
            return self.build_args == build_args
        return True


class CachedBuild(BaseModel):
    """A verified executable owned by the toolchain store; read-only once promoted."""

    model_config = ConfigDict(frozen=True)

    spec: ToolchainSpec
    executable: Path
    sha256: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: BuildStatus = BuildStatus.INSTALLED
    build_args: List[str] = Field(default_factory=list)

    @property
    def bin_dir(self) -> Path:
        return self.executable.parent
