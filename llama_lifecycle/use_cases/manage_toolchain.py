from typing import List, Optional

from llama_lifecycle.entities.toolchain import (
    BuildMode,
    CachedBuild,
    ComputeBackend,
    ComputeBackendConfig,
    ToolchainSpec,
)
from llama_lifecycle.frameworks_drivers.backend_detector import BackendDetector
from llama_lifecycle.frameworks_drivers.toolchain_store import ToolchainStore


class ManageToolchain:
    """Install, validate, remove and list cached llama-server builds."""

    def __init__(self, store: ToolchainStore, detector: Optional[BackendDetector] = None):
        self.store = store
        self.detector = detector or BackendDetector()

    def spec(self, backend: Optional[ComputeBackendConfig] = None, repo_tag: Optional[str] = None,
             mode: Optional[BuildMode] = None) -> ToolchainSpec:
        requested = backend or self.store.config.backend
        resolved = self.detector.resolve(requested, mode or self.store.config.mode)
        return self.store.spec_for(resolved, repo_tag)

    def install(self, backend: Optional[ComputeBackendConfig] = None, repo_tag: Optional[str] = None,
                mode: Optional[BuildMode] = None, build_args: Optional[List[str]] = None) -> CachedBuild:
        spec = self.spec(backend, repo_tag, mode)
        return self.store.resolve(spec, mode=mode, build_args=build_args)

    def validate(self, backend: Optional[ComputeBackendConfig] = None, repo_tag: Optional[str] = None,
                 mode: Optional[BuildMode] = None, build_args: Optional[List[str]] = None) -> CachedBuild:
        spec = self.spec(backend, repo_tag, mode)
        return self.store.validate(spec, mode or self.store.config.mode, build_args)

    def remove(self, backend: Optional[ComputeBackendConfig] = None, repo_tag: Optional[str] = None) -> bool:
        requested = backend or self.store.config.backend
        # Explicit backends name their cache entry directly, even when the accelerator is gone.
        explicit = {
            ComputeBackendConfig.CPU: ComputeBackend.CPU,
            ComputeBackendConfig.CUDA: ComputeBackend.CUDA,
            ComputeBackendConfig.METAL: ComputeBackend.METAL,
        }
        resolved = explicit.get(requested) or self.detector.resolve(requested, BuildMode.INSTALL_ONLY)
        return self.store.remove(self.store.spec_for(resolved, repo_tag))

    def list(self) -> List[CachedBuild]:
        return self.store.list_builds()
