"""
Resource planning: fits a model into the measured accelerator and host memory
by choosing how many layers to offload, the context size and thread counts.
"""
from typing import List, Optional

from llama_lifecycle.entities.gpu import GIB, GPU
from llama_lifecycle.entities.resource_plan import HostTelemetry, ModelMetadata, PlanOverrides, ResourcePlan
from llama_lifecycle.frameworks_drivers.config import PlannerConfig
from llama_lifecycle.shared.errors import InsufficientResources
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.vram_estimator import VramEstimator


class ResourcePlanner:
    """Computes ResourcePlans; never reserves memory, the result is advisory."""

    def __init__(self, config: Optional[PlannerConfig] = None):
        self.config = config or PlannerConfig()
        self.logger = Logger.get(__name__)

    def headroom(self, budget_bytes: int) -> int:
        """Safety margin kept free on a device with the given budget."""
        return max(self.config.safety_margin_bytes, int(self.config.safety_margin_fraction * budget_bytes))

    def _layers_bytes(self, metadata: ModelMetadata, layers: int, ctx_size: int) -> int:
        """Weights, KV share and compute buffers of `layers` layers placed on one device."""
        if layers <= 0:
            return 0
        weights = VramEstimator.per_layer_bytes(metadata) * layers
        kv = VramEstimator.kv_cache_bytes(
            metadata, ctx_size, self.config.cache_type_k, self.config.cache_type_v, layers=layers
        )
        return weights + kv + VramEstimator.compute_buffer_bytes(weights, self.config.activation_overhead_factor)

    def _context_candidates(self, metadata: ModelMetadata, forced_ctx: Optional[int]) -> List[int]:
        if forced_ctx is not None:
            return [forced_ctx]
        ctx = self.config.ctx_size
        if metadata.context_length:
            ctx = min(ctx, metadata.context_length)
        candidates = [ctx]
        while ctx > self.config.min_ctx_size:
            ctx = max(ctx // 2, self.config.min_ctx_size)
            candidates.append(ctx)
        return candidates

    def _threads(self, telemetry: HostTelemetry, forced: Optional[int], name: str) -> int:
        if forced is None:
            return max(1, int(telemetry.physical_cores * self.config.thread_fraction))
        if forced > telemetry.logical_cores:
            self.logger.warning(f"Requested {forced} {name} exceeds {telemetry.logical_cores} logical cores; clamping")
            return telemetry.logical_cores
        return forced

    def threads_for(self, telemetry: HostTelemetry, overrides: Optional[PlanOverrides] = None) -> tuple[int, int]:
        """Generation and batch thread counts for the host, honouring forced values."""
        overrides = overrides or PlanOverrides()
        threads = self._threads(telemetry, overrides.threads, "threads")
        threads_batch = self._threads(telemetry, overrides.threads_batch, "batch threads") \
            if overrides.threads_batch is not None else threads
        return threads, threads_batch

    @staticmethod
    def _multi_gpu_layout(gpus: List[GPU]) -> tuple[Optional[int], Optional[List[float]]]:
        if not gpus:
            return None, None
        main_gpu = max(gpus, key=lambda gpu: gpu.free_memory_bytes).id
        if len(gpus) == 1:
            return main_gpu, None
        ordered = sorted(gpus, key=lambda gpu: gpu.id)
        total_free = sum(gpu.free_memory_bytes for gpu in ordered)
        if total_free == 0:
            return main_gpu, None
        return main_gpu, [round(gpu.free_memory_bytes / total_free, 4) for gpu in ordered]

    def plan(
        self,
        metadata: ModelMetadata,
        telemetry: HostTelemetry,
        overrides: Optional[PlanOverrides] = None,
    ) -> ResourcePlan:
        """
        Produce a plan whose projected usage fits within budget minus headroom.

        Layers are offloaded greedily, from all layers downwards, until the
        accelerator projection fits. The remainder must fit in host RAM; if it
        does not, the context is halved down to min_ctx_size.

        Args:
            metadata: Model facts
            telemetry: Current host and accelerator memory snapshot
            overrides: Forced values; forced layers and context are never shrunk

        Returns:
            The resource plan

        Raises:
            InsufficientResources: If nothing fits, or a forced value cannot be honoured
        """
        overrides = overrides or PlanOverrides()
        use_gpu = self.config.use_gpu if overrides.use_gpu is None else overrides.use_gpu
        gpus = telemetry.gpus if use_gpu else []
        shared_memory = any(gpu.backend == "metal" for gpu in gpus)

        forced_layers = overrides.gpu_layers
        if forced_layers is not None:
            if forced_layers > metadata.layer_count:
                raise InsufficientResources(
                    f"Requested {forced_layers} GPU layers but {metadata.name} has only {metadata.layer_count}",
                    required=forced_layers, available=metadata.layer_count,
                )
            if forced_layers > 0 and not gpus:
                raise InsufficientResources(
                    f"Requested {forced_layers} GPU layers but no accelerator is available",
                    required=forced_layers, available=0,
                )

        gpu_budget = sum(gpu.free_memory_bytes for gpu in gpus)
        gpu_headroom = self.headroom(gpu_budget) if gpus else 0
        gpu_limit = gpu_budget - gpu_headroom

        threads, threads_batch = self.threads_for(telemetry, overrides)

        last_required = 0
        last_available = 0
        gpu_exhausted = False
        for ctx_size in self._context_candidates(metadata, overrides.ctx_size):
            if forced_layers is not None:
                layers = forced_layers
                if self._layers_bytes(metadata, layers, ctx_size) > gpu_limit and layers > 0:
                    last_required = self._layers_bytes(metadata, layers, ctx_size)
                    last_available = max(gpu_limit, 0)
                    gpu_exhausted = True
                    continue
            else:
                layers = metadata.layer_count if gpus else 0
                while layers > 0 and self._layers_bytes(metadata, layers, ctx_size) > gpu_limit:
                    layers -= 1
            gpu_projected = self._layers_bytes(metadata, layers, ctx_size)

            host_budget = telemetry.available_ram_bytes
            if shared_memory:
                host_budget = max(host_budget - gpu_projected, 0)
            host_headroom = self.headroom(host_budget)
            host_projected = self._layers_bytes(metadata, metadata.layer_count - layers, ctx_size)
            if host_projected > host_budget - host_headroom:
                last_required = host_projected + host_headroom
                last_available = host_budget
                gpu_exhausted = False
                self.logger.debug(f"ctx {ctx_size} with {layers} GPU layers needs {host_projected / GIB:.2f}GB host RAM; "
                                  f"{(host_budget - host_headroom) / GIB:.2f}GB usable")
                continue

            on_gpu = layers > 0
            main_gpu, tensor_split = self._multi_gpu_layout(gpus) if on_gpu else (None, None)
            plan = ResourcePlan(
                gpu_layers=layers,
                ctx_size=ctx_size,
                threads=threads,
                threads_batch=threads_batch,
                device="gpu" if on_gpu else "cpu",
                budget_bytes=gpu_budget if on_gpu else host_budget,
                headroom_bytes=gpu_headroom if on_gpu else host_headroom,
                projected_bytes=gpu_projected if on_gpu else host_projected,
                host_projected_bytes=host_projected,
                main_gpu=main_gpu,
                tensor_split=tensor_split,
            )
            self.logger.info(
                f"Planned {metadata.name}: {layers}/{metadata.layer_count} layers on {plan.device}, "
                f"ctx {ctx_size}, {threads} threads, projected {plan.projected_bytes / GIB:.2f}GB of "
                f"{(plan.budget_bytes - plan.headroom_bytes) / GIB:.2f}GB usable"
            )
            return plan

        if gpu_exhausted:
            raise InsufficientResources(
                f"{forced_layers} forced GPU layers need {last_required / GIB:.2f}GB but only "
                f"{last_available / GIB:.2f}GB of accelerator memory is usable",
                required=last_required, available=last_available,
            )
        raise InsufficientResources(
            f"{metadata.name} does not fit: needs {last_required / GIB:.2f}GB, "
            f"{last_available / GIB:.2f}GB available",
            required=last_required, available=last_available,
        )
