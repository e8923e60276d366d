import json
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from llama_lifecycle.entities.server import TransportChoice
from llama_lifecycle.entities.toolchain import BuildMode, ComputeBackendConfig, DEFAULT_REPO_TAG
from llama_lifecycle.shared.errors import InvalidConfig
from llama_lifecycle.shared.platform_utils import PlatformUtils

CONFIG_ENV = "LLAMA_LIFECYCLE_CONFIG"
CONFIG_FILE_NAME = "config.json"


class ToolchainConfig(BaseModel):
    """Configuration for the toolchain cache.

    Attributes:
        cache_root: Root directory of the toolchain cache (None for the platform default).
        project: Sub-directory namespacing the cache of one application.
        repo_tag: Default llama.cpp release tag.
        backend: Default requested compute backend.
        mode: Default acquisition mode.
        build_args: Extra CMake arguments appended to source builds.
        fail_limit: Failed attempts after which a cache entry is purged.
        require_checksum: Refuse prebuilt archives without a published checksum.
        lock_timeout: Seconds to wait for another process resolving the same build.
        build_timeout: Seconds allowed for a single cmake invocation.
    """

    cache_root: Optional[str] = Field(None, description="Root directory of the toolchain cache")
    project: str = Field("default", min_length=1, description="Cache namespace for one application")
    repo_tag: str = Field(DEFAULT_REPO_TAG, description="Default llama.cpp release tag")
    backend: ComputeBackendConfig = Field(ComputeBackendConfig.DEFAULT, description="Default requested compute backend")
    mode: BuildMode = Field(BuildMode.BUILD_OR_INSTALL, description="Default acquisition mode")
    build_args: List[str] = Field(default_factory=list, description="Extra CMake arguments for source builds")
    fail_limit: int = Field(3, ge=1, description="Failed attempts after which a cache entry is purged")
    require_checksum: bool = Field(False, description="Refuse prebuilt archives without a published checksum")
    lock_timeout: float = Field(1800.0, gt=0, description="Seconds to wait for a concurrent resolver")
    build_timeout: float = Field(3600.0, gt=0, description="Seconds allowed for a single cmake invocation")


class PlannerConfig(BaseModel):
    """Configuration for the resource planner.

    Attributes:
        ctx_size: Default context size when the caller does not force one.
        min_ctx_size: Smallest context the planner may shrink to.
        safety_margin_bytes: Absolute memory kept free on each device.
        safety_margin_fraction: Fraction of each budget kept free.
        thread_fraction: Fraction of physical cores used for generation.
        use_gpu: Whether accelerator offload is considered at all.
        activation_overhead_factor: Compute buffer size relative to placed weights.
        cache_type_k: KV cache type assumed for K.
        cache_type_v: KV cache type assumed for V.
        remote_metadata: Whether headers of downloaded models are fetched for planning.
    """

    ctx_size: int = Field(4096, gt=0, description="Default context size")
    min_ctx_size: int = Field(512, gt=0, description="Smallest context the planner may shrink to")
    safety_margin_bytes: int = Field(512 * 1024 ** 2, ge=0, description="Absolute memory kept free per device")
    safety_margin_fraction: float = Field(0.05, ge=0, lt=1, description="Fraction of each budget kept free")
    thread_fraction: float = Field(0.7, gt=0, le=1, description="Fraction of physical cores used for generation")
    use_gpu: bool = Field(True, description="Whether accelerator offload is considered")
    activation_overhead_factor: float = Field(0.1, ge=0, description="Compute buffer size relative to placed weights")
    cache_type_k: str = Field("f16", description="KV cache type for K")
    cache_type_v: str = Field("f16", description="KV cache type for V")
    remote_metadata: bool = Field(True, description="Fetch GGUF headers of downloaded models for planning")


class LaunchConfig(BaseModel):
    """Configuration for launching and supervising llama-server.

    Attributes:
        transport: Preferred transport (auto, unix or http).
        load_budget: Seconds allowed for a local model to load.
        download_budget: Seconds allowed when the server downloads the model.
        runtime_dir: Directory for pidfiles and logs (None for the executable's directory).
        stop_timeout: Seconds to wait for a graceful shutdown before killing.
        health_interval: Seconds between supervisor health probes.
    """

    transport: TransportChoice = Field(TransportChoice.AUTO, description="Preferred transport")
    load_budget: float = Field(45.0, gt=0, description="Seconds allowed for a local model to load")
    download_budget: float = Field(600.0, gt=0, description="Seconds allowed when the server downloads the model")
    runtime_dir: Optional[str] = Field(None, description="Directory for pidfiles and logs")
    stop_timeout: float = Field(2.0, gt=0, description="Graceful shutdown wait before killing")
    health_interval: float = Field(5.0, gt=0, description="Seconds between supervisor health probes")


class ClientConfig(BaseModel):
    """Configuration for the endpoint client.

    Attributes:
        timeout: Default per-request timeout in seconds.
    """

    timeout: float = Field(180.0, gt=0, description="Default per-request timeout in seconds")


class Config(BaseModel):
    """User defaults, persisted as JSON."""
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    launch: LaunchConfig = Field(default_factory=LaunchConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @staticmethod
    def default_path() -> Path:
        env_path = os.environ.get(CONFIG_ENV)
        if env_path:
            return Path(env_path)
        return PlatformUtils.user_config_dir() / CONFIG_FILE_NAME

    @classmethod
    def load(cls, config_path: Optional[str | Path] = None) -> "Config":
        """
        Load the configuration, falling back to defaults when no file exists.

        Args:
            config_path: Explicit path; defaults to LLAMA_LIFECYCLE_CONFIG or the user config dir

        Returns:
            The loaded configuration

        Raises:
            InvalidConfig: If the file exists but cannot be parsed or validated
        """
        path = Path(config_path) if config_path else cls.default_path()
        if not path.exists():
            if config_path:
                raise InvalidConfig(str(path), "configuration file not found")
            return cls()

        try:
            with open(path, "r") as f:
                data = json.load(f)
            return cls(**data)
        except json.JSONDecodeError as e:
            raise InvalidConfig(str(path), f"invalid JSON: {e}") from e
        except ValidationError as e:
            raise InvalidConfig(str(path), str(e)) from e

    def save(self, config_path: Optional[str | Path] = None) -> Path:
        """Write the configuration as JSON and return the path written."""
        path = Path(config_path) if config_path else self.default_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write(self.model_dump_json(indent=2))
        return path
