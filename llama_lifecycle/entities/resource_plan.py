from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .gpu import GPU


class ModelMetadata(BaseModel):
    """Facts about a model needed for memory sizing.

    Attributes:
        name: Display name of the model.
        parameters: Total parameter count.
        layer_count: Number of transformer blocks (offloadable layers).
        quantization: Quantization label, e.g. 'Q4_K_M'.
        file_size_bytes: Size of the weights file, when known.
        context_length: Training context length, when known.
        hidden_size: Embedding length, when known.
        gqa_factor: head_count_kv / head_count (1.0 without GQA).
    """

    model_config = ConfigDict(protected_namespaces=())

    name: str = "model"
    parameters: int = Field(..., gt=0)
    layer_count: int = Field(..., gt=0)
    quantization: str = "Q4_K_M"
    file_size_bytes: Optional[int] = Field(None, ge=0)
    context_length: Optional[int] = Field(None, gt=0)
    hidden_size: Optional[int] = Field(None, gt=0)
    gqa_factor: float = Field(1.0, gt=0, le=1.0)


class HostTelemetry(BaseModel):
    """Point-in-time snapshot of host and accelerator memory."""
    gpus: List[GPU] = Field(default_factory=list)
    total_ram_bytes: int = Field(..., ge=0)
    available_ram_bytes: int = Field(..., ge=0)
    logical_cores: int = Field(1, ge=1)
    physical_cores: int = Field(1, ge=1)

    @property
    def free_vram_bytes(self) -> int:
        return sum(gpu.free_memory_bytes for gpu in self.gpus)


class PlanOverrides(BaseModel):
    """User-forced values that bypass estimation for their field."""
    gpu_layers: Optional[int] = Field(None, ge=0)
    ctx_size: Optional[int] = Field(None, gt=0)
    threads: Optional[int] = Field(None, ge=1)
    threads_batch: Optional[int] = Field(None, ge=1)
    use_gpu: Optional[bool] = None


class ResourcePlan(BaseModel):
    """Executable configuration that fits the model into the measured budget.

    Attributes:
        gpu_layers: Number of layers offloaded to the accelerator.
        ctx_size: Context length to launch with.
        threads: Generation threads.
        threads_batch: Prompt processing threads.
        device: Where the bulk of the model lives.
        budget_bytes: Measured available memory on the planned device.
        headroom_bytes: Safety margin kept free on that device.
        projected_bytes: Estimated usage on that device.
        host_projected_bytes: Estimated host RAM usage for non-offloaded layers.
        main_gpu: Primary GPU index for multi-GPU hosts.
        tensor_split: Per-GPU proportions for multi-GPU hosts.
    """

    gpu_layers: int = Field(..., ge=0)
    ctx_size: int = Field(..., gt=0)
    threads: int = Field(..., ge=1)
    threads_batch: int = Field(..., ge=1)
    device: Literal["gpu", "cpu"]
    budget_bytes: int = Field(..., ge=0)
    headroom_bytes: int = Field(..., ge=0)
    projected_bytes: int = Field(..., ge=0)
    host_projected_bytes: int = Field(0, ge=0)
    main_gpu: Optional[int] = None
    tensor_split: Optional[List[float]] = None

    @property
    def fits(self) -> bool:
        return self.projected_bytes <= self.budget_bytes - self.headroom_bytes
