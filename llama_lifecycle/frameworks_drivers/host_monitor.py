"""
Host telemetry: accelerator memory through nvidia-ml-py (pynvml), host RAM and
core counts through psutil.

The nvidia-ml-py distribution provides the ``pynvml`` module; when it is not
installed the host is treated as having no CUDA devices.
"""
from typing import List, Optional

import psutil

try:
    import pynvml  # provided by nvidia-ml-py
except ImportError:
    pynvml = None

from llama_lifecycle.entities.gpu import GPU
from llama_lifecycle.entities.resource_plan import HostTelemetry
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.platform_utils import PlatformUtils

# Share of unified memory the Metal backend may claim
METAL_MEMORY_FRACTION = 0.7


class HostMonitor:
    """Service for sampling host and GPU memory."""

    def __init__(self):
        self.logger = Logger.get(__name__)
        self.initialized = False

        if pynvml is None:
            self.logger.debug("pynvml/nvidia-ml-py not available, CUDA telemetry disabled")
            return

        try:
            pynvml.nvmlInit()
            self.initialized = True
            self.logger.debug("NVML initialized")
        except pynvml.NVMLError as e:
            self.logger.debug(f"NVML not available: {e}")

    def get_gpu_count(self) -> int:
        """Get the number of visible CUDA devices."""
        if not self.initialized:
            return 0
        try:
            return pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            self.logger.error(f"Error getting GPU count: {e}")
            return 0

    def get_gpu_info(self, gpu_id: int) -> Optional[GPU]:
        """Get memory information about a specific CUDA device."""
        if not self.initialized:
            return None

        try:
            handle = pynvml.nvmlDeviceGetHandleByIndex(gpu_id)
            raw_name = pynvml.nvmlDeviceGetName(handle)
            name = raw_name.decode('utf-8') if isinstance(raw_name, bytes) else raw_name
            memory_info = pynvml.nvmlDeviceGetMemoryInfo(handle)

            compute_capability = None
            try:
                major, minor = pynvml.nvmlDeviceGetCudaComputeCapability(handle)
                compute_capability = f"{major}.{minor}"
            except pynvml.NVMLError:
                pass

            return GPU(
                id=gpu_id,
                name=name,
                total_memory_bytes=int(memory_info.total),
                free_memory_bytes=int(memory_info.free),
                backend="cuda",
                compute_capability=compute_capability,
            )
        except pynvml.NVMLError as e:
            self.logger.error(f"Error getting GPU info for GPU {gpu_id}: {e}")
            return None

    def get_all_gpus(self) -> List[GPU]:
        """Get information about all CUDA devices."""
        gpus = []
        for i in range(self.get_gpu_count()):
            gpu_info = self.get_gpu_info(i)
            if gpu_info:
                gpus.append(gpu_info)
        return gpus

    def get_metal_device(self) -> Optional[GPU]:
        """The Apple GPU as a device sharing unified memory with the host."""
        if not PlatformUtils.is_macos():
            return None
        memory = psutil.virtual_memory()
        return GPU(
            id=0,
            name="Apple Metal",
            total_memory_bytes=int(memory.total * METAL_MEMORY_FRACTION),
            free_memory_bytes=int(memory.available * METAL_MEMORY_FRACTION),
            backend="metal",
        )

    def snapshot(self, backend: str = "cuda") -> HostTelemetry:
        """
        Take a point-in-time snapshot of host and accelerator memory.

        Args:
            backend: The compute backend of the build that will run ("cpu", "cuda" or "metal")

        Returns:
            HostTelemetry with the devices usable by that backend
        """
        memory = psutil.virtual_memory()
        logical = psutil.cpu_count(logical=True) or 1
        physical = psutil.cpu_count(logical=False) or logical

        gpus: List[GPU] = []
        if backend == "cuda":
            gpus = self.get_all_gpus()
        elif backend == "metal":
            metal = self.get_metal_device()
            if metal:
                gpus = [metal]

        telemetry = HostTelemetry(
            gpus=gpus,
            total_ram_bytes=int(memory.total),
            available_ram_bytes=int(memory.available),
            logical_cores=logical,
            physical_cores=physical,
        )
        self.logger.debug(
            f"Telemetry: {len(gpus)} GPU(s), {telemetry.free_vram_bytes / 1024 ** 3:.1f}GB free VRAM, "
            f"{telemetry.available_ram_bytes / 1024 ** 3:.1f}GB available RAM"
        )
        return telemetry

    def shutdown(self):
        """Release NVML."""
        if self.initialized:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as e:
                self.logger.error(f"Error shutting down NVML: {e}")
            finally:
                self.initialized = False
