"""
Memory footprint estimates for llama.cpp models, used by the resource planner.
"""
import math
from typing import Optional

from llama_lifecycle.entities.resource_plan import ModelMetadata

# Approximate bits per weight for common GGUF quantizations.
QUANTIZATION_BITS = {
    'F32': 32, 'FP32': 32, 'F16': 16, 'FP16': 16, 'BF16': 16,
    'Q8_0': 8.5, 'Q6_K': 6.56, 'Q5_K_M': 5.5, 'Q5_K_S': 5.5, 'Q5_0': 5.5, 'Q5_1': 6,
    'Q4_K_M': 4.85, 'Q4_K_S': 4.58, 'Q4_0': 4.5, 'Q4_1': 5, 'IQ4_NL': 4.5, 'IQ4_XS': 4.25,
    'Q3_K_L': 4.27, 'Q3_K_M': 3.91, 'Q3_K_S': 3.5, 'Q2_K': 3.35,
}

# Effective bytes per element for KV cache types, including block scale overhead.
KV_TYPE_BYTES = {
    'f32': 4.0,
    'f16': 2.0,
    'bf16': 2.0,
    'q8_0': 1.0625,  # (32*1 + 2)/32
    'q4_0': 0.5625,  # (16 + 2)/32
    'q4_1': 0.625,   # (16 + 4)/32
    'iq4_nl': 0.5625,
    'q5_0': 0.6875,  # (20 + 2)/32
    'q5_1': 0.75,    # (20 + 4)/32
}


class VramEstimator:
    """Static helpers estimating weight, KV cache and compute buffer sizes in bytes."""

    @staticmethod
    def bits_per_weight(quantization: str) -> float:
        return QUANTIZATION_BITS.get(quantization.upper(), 16)

    @staticmethod
    def weight_bytes(metadata: ModelMetadata) -> int:
        """Size of the model weights; the file size when known, else derived from the parameter count."""
        if metadata.file_size_bytes:
            return metadata.file_size_bytes
        return int(metadata.parameters * VramEstimator.bits_per_weight(metadata.quantization) / 8)

    @staticmethod
    def per_layer_bytes(metadata: ModelMetadata) -> int:
        return math.ceil(VramEstimator.weight_bytes(metadata) / metadata.layer_count)

    @staticmethod
    def kv_cache_bytes(
        metadata: ModelMetadata,
        ctx_size: int,
        cache_type_k: str = 'f16',
        cache_type_v: str = 'f16',
        layers: Optional[int] = None,
    ) -> int:
        """
        Estimate the KV cache size for a context length.

        Args:
            metadata: Model facts; hidden_size and gqa_factor improve accuracy
            ctx_size: Context length in tokens
            cache_type_k: KV cache type for K
            cache_type_v: KV cache type for V
            layers: Number of layers whose cache is counted (defaults to all)

        Returns:
            Estimated KV cache size in bytes
        """
        k_bytes = KV_TYPE_BYTES.get(cache_type_k.lower(), 2.0)
        v_bytes = KV_TYPE_BYTES.get(cache_type_v.lower(), 2.0)
        layer_total = metadata.layer_count
        if layers is None:
            layers = layer_total

        if metadata.hidden_size is not None:
            per_token = layers * metadata.hidden_size * metadata.gqa_factor * (k_bytes + v_bytes)
            return int(per_token * ctx_size)

        # Parameter count heuristic, normalised to an f16 cache.
        base_kv_per_token = 200_000
        if metadata.parameters <= 1_000_000:
            scale = 0.1
        else:
            scale = math.sqrt(metadata.parameters / 7_000_000_000) * 2
        avg_kv_bytes = (k_bytes + v_bytes) / 2
        total = ctx_size * base_kv_per_token * max(scale, 0.05) * (avg_kv_bytes / 2.0)
        return int(total * layers / layer_total)

    @staticmethod
    def compute_buffer_bytes(weight_bytes: int, activation_overhead_factor: float = 0.1) -> int:
        """Scratch buffers for activations, proportional to the weights placed on a device."""
        return int(weight_bytes * activation_overhead_factor)

    @staticmethod
    def extract_quantization_from_variant(variant: str) -> str:
        """
        Extract quantization level from a model file or variant name.

        Args:
            variant: Model variant name (e.g., 'llama-2-7b-chat.Q4_K_M.gguf')

        Returns:
            Quantization level string, 'F16' when none is recognised
        """
        variant_upper = variant.upper()
        # Longest first so Q4_K_M wins over Q4_K and Q4_0 over Q4
        for pattern in sorted(QUANTIZATION_BITS, key=len, reverse=True):
            if pattern in variant_upper:
                return pattern
        return 'F16'
