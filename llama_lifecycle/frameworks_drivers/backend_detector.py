"""
Compute backend detection: resolves a requested ComputeBackendConfig into the
concrete ComputeBackend a llama-server build should target on this host.
"""
import logging
import subprocess

try:
    import pynvml  # provided by nvidia-ml-py
except ImportError:
    pynvml = None

from llama_lifecycle.entities.toolchain import BuildMode, ComputeBackend, ComputeBackendConfig
from llama_lifecycle.shared.errors import BackendUnavailable
from llama_lifecycle.shared.platform_utils import PlatformUtils


class BackendDetector:
    """Handles accelerator detection for toolchain selection."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _unavailable(what: str, reason: str) -> BackendUnavailable:
        return BackendUnavailable(what, PlatformUtils.os_name(), PlatformUtils.arch(), reason)

    @staticmethod
    def is_nvcc_available() -> bool:
        """Check if the CUDA compiler is on PATH."""
        try:
            result = subprocess.run(["nvcc", "--version"], check=False, capture_output=True)
            return result.returncode == 0
        except (FileNotFoundError, PermissionError):
            return False

    def cuda_device_count(self) -> int:
        """Number of CUDA devices reported by NVML; raises BackendUnavailable if NVML cannot start."""
        if pynvml is None:
            raise self._unavailable("CUDA", "nvidia-ml-py is not installed")
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise self._unavailable("CUDA", f"NVML initialisation failed: {e}") from e
        try:
            return pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            raise self._unavailable("CUDA", f"NVML device query failed: {e}") from e
        finally:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError:
                pass

    def validate_cuda(self, mode: BuildMode) -> ComputeBackend:
        if PlatformUtils.is_macos():
            raise self._unavailable("CUDA", "Not Linux or Windows")
        if self.cuda_device_count() == 0:
            raise self._unavailable("CUDA", "no CUDA-capable GPU detected")
        if mode == BuildMode.BUILD_ONLY and not self.is_nvcc_available():
            raise self._unavailable(
                "CUDA",
                "CUDA toolkit required to build with CUDA support; install it or use install_only mode",
            )
        return ComputeBackend.CUDA

    def validate_metal(self) -> ComputeBackend:
        if not PlatformUtils.is_macos():
            raise self._unavailable("Metal", "Not macOS")
        return ComputeBackend.METAL

    def resolve(self, requested: ComputeBackendConfig, mode: BuildMode = BuildMode.BUILD_OR_INSTALL) -> ComputeBackend:
        """
        Resolve a requested backend against the host.

        Args:
            requested: The backend configuration asked for
            mode: The acquisition mode (source builds need extra tooling)

        Returns:
            The concrete backend to build or download

        Raises:
            BackendUnavailable: If a strictly required accelerator is missing
        """
        if requested == ComputeBackendConfig.DEFAULT:
            requested = (ComputeBackendConfig.METAL_IF_AVAILABLE if PlatformUtils.is_macos()
                         else ComputeBackendConfig.CUDA_IF_AVAILABLE)

        if requested == ComputeBackendConfig.CPU:
            return ComputeBackend.CPU
        if requested == ComputeBackendConfig.CUDA:
            return self.validate_cuda(mode)
        if requested == ComputeBackendConfig.METAL:
            return self.validate_metal()

        try:
            if requested == ComputeBackendConfig.CUDA_IF_AVAILABLE:
                return self.validate_cuda(mode)
            return self.validate_metal()
        except BackendUnavailable as e:
            self.logger.info(f"{e}; falling back to CPU")
            return ComputeBackend.CPU
