from typing import Optional

from pydantic import BaseModel, Field

GIB = 1024 ** 3


class GPU(BaseModel):
    """Represents an accelerator device as seen at one point in time."""
    id: int  # Device index as used by --main-gpu / CUDA_VISIBLE_DEVICES
    name: str
    total_memory_bytes: int = Field(ge=0)
    free_memory_bytes: int = Field(ge=0)
    backend: str = "cuda"  # cuda or metal
    compute_capability: Optional[str] = None

    @property
    def used_memory_bytes(self) -> int:
        return max(self.total_memory_bytes - self.free_memory_bytes, 0)

    @property
    def free_memory_gb(self) -> float:
        return self.free_memory_bytes / GIB

    @property
    def total_memory_gb(self) -> float:
        return self.total_memory_bytes / GIB
