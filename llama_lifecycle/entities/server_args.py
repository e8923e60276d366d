"""
Typed llama-server command line.

Each field maps to exactly one llama-server flag; ranges and incompatible
combinations are rejected when the model is constructed, before anything is
spawned.
"""
from pathlib import Path, PurePosixPath
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .resource_plan import ResourcePlan

DEFAULT_MODEL_URL = (
    "https://huggingface.co/bartowski/google_gemma-3-1b-it-qat-GGUF/resolve/main/"
    "google_gemma-3-1b-it-qat-Q4_K_M.gguf"
)
DEFAULT_HF_REPO = "bartowski/google_gemma-3-1b-it-qat-GGUF:q4_k_m"

HF_REPO_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+(:[A-Za-z0-9_.-]{2,})?$"

CacheType = Literal["f32", "f16", "bf16", "q8_0", "q4_0", "q4_1", "iq4_nl", "q5_0", "q5_1"]
Pooling = Literal["none", "mean", "cls", "last", "rank"]

# (field, flag, kind) in the order flags are emitted.
#   value: "--flag <value>"; flag: "--flag" when true; list: comma separated
_FLAGS = [
    ("model", "-m", "value"),
    ("model_url", "-mu", "value"),
    ("hf_repo", "-hf", "value"),
    ("hf_file", "-hff", "value"),
    ("hf_token", "-hft", "value"),
    ("alias", "--alias", "value"),
    ("host", "--host", "value"),
    ("port", "--port", "value"),
    ("threads", "--threads", "value"),
    ("threads_batch", "--threads-batch", "value"),
    ("threads_http", "--threads-http", "value"),
    ("ctx_size", "--ctx-size", "value"),
    ("batch_size", "--batch-size", "value"),
    ("ubatch_size", "--ubatch-size", "value"),
    ("parallel", "--parallel", "value"),
    ("flash_attn", "--flash-attn", "flag"),
    ("cache_reuse", "--cache-reuse", "value"),
    ("rope_scaling", "--rope-scaling", "value"),
    ("rope_scale", "--rope-scale", "value"),
    ("rope_freq_base", "--rope-freq-base", "value"),
    ("rope_freq_scale", "--rope-freq-scale", "value"),
    ("yarn_orig_ctx", "--yarn-orig-ctx", "value"),
    ("yarn_ext_factor", "--yarn-ext-factor", "value"),
    ("yarn_attn_factor", "--yarn-attn-factor", "value"),
    ("yarn_beta_slow", "--yarn-beta-slow", "value"),
    ("yarn_beta_fast", "--yarn-beta-fast", "value"),
    ("no_kv_offload", "--no-kv-offload", "flag"),
    ("cache_type_k", "--cache-type-k", "value"),
    ("cache_type_v", "--cache-type-v", "value"),
    ("defrag_thold", "--defrag-thold", "value"),
    ("mlock", "--mlock", "flag"),
    ("no_mmap", "--no-mmap", "flag"),
    ("numa", "--numa", "value"),
    ("device", "--device", "list"),
    ("gpu_layers", "--gpu-layers", "value"),
    ("split_mode", "--split-mode", "value"),
    ("tensor_split", "--tensor-split", "list"),
    ("main_gpu", "--main-gpu", "value"),
    ("model_draft", "--model-draft", "value"),
    ("draft_max", "--draft-max", "value"),
    ("draft_min", "--draft-min", "value"),
    ("gpu_layers_draft", "--gpu-layers-draft", "value"),
    ("lora", "--lora", "repeat"),
    ("embeddings", "--embeddings", "flag"),
    ("pooling", "--pooling", "value"),
    ("jinja", "--jinja", "flag"),
    ("chat_template", "--chat-template", "value"),
    ("reasoning_format", "--reasoning-format", "value"),
    ("reasoning_budget", "--reasoning-budget", "value"),
    ("metrics", "--metrics", "flag"),
    ("timeout", "--timeout", "value"),
    ("log_disable", "--log-disable", "flag"),
]


def model_name_from_source(model: Optional[str] = None, model_url: Optional[str] = None,
                           hf_repo: Optional[str] = None) -> str:
    """
    Derive the lowercase model name llama-server reports for a model source.

    Args:
        model: Local GGUF path
        model_url: Download URL of a GGUF file
        hf_repo: Hugging Face reference 'user/model[:quant]'

    Returns:
        The model name used for readiness checks and as the default alias
    """
    if model:
        return Path(model).stem.lower()
    if model_url:
        return PurePosixPath(urlparse(model_url).path).stem.lower()
    if hf_repo:
        repo = hf_repo.split(":", 1)[0]
        return repo.split("/", 1)[1].lower()
    raise ValueError("No model source given")


class ServerArgs(BaseModel):
    """Validated llama-server arguments.

    Attributes:
        model: Local path to a GGUF file (-m).
        model_url: URL of a GGUF file to download (-mu).
        hf_repo: Hugging Face repository 'user/model[:quant]' (-hf).
        webui: Serve the built-in web UI; emits --no-webui when false.
        gpu_layers: Layers offloaded to the accelerator.
        ctx_size: Context size, 0 for the model default.
    """

    model_config = ConfigDict(protected_namespaces=(), extra="forbid")

    # Model sources
    model: Optional[str] = None
    model_url: Optional[str] = None
    hf_repo: Optional[str] = Field(None, pattern=HF_REPO_PATTERN)
    hf_file: Optional[str] = None
    hf_token: Optional[str] = None
    alias: Optional[str] = None

    # Networking
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    webui: bool = False
    threads_http: Optional[int] = Field(None, ge=1)
    timeout: Optional[int] = Field(None, ge=1)
    embeddings: bool = False
    metrics: bool = False
    log_disable: bool = False

    # CPU
    threads: Optional[int] = None
    threads_batch: Optional[int] = None
    mlock: bool = False
    no_mmap: bool = False
    numa: Optional[Literal["distribute", "isolate", "numactl"]] = None

    # Context and batching
    ctx_size: Optional[int] = Field(None, ge=0)
    batch_size: Optional[int] = Field(None, ge=1)
    ubatch_size: Optional[int] = Field(None, ge=1)
    parallel: Optional[int] = Field(None, ge=1)
    flash_attn: bool = False
    cache_reuse: Optional[int] = Field(None, ge=0)

    # RoPE
    rope_scaling: Optional[Literal["none", "linear", "yarn"]] = None
    rope_scale: Optional[float] = Field(None, gt=0)
    rope_freq_base: Optional[float] = Field(None, gt=0)
    rope_freq_scale: Optional[float] = Field(None, gt=0)
    yarn_orig_ctx: Optional[int] = Field(None, ge=0)
    yarn_ext_factor: Optional[float] = None
    yarn_attn_factor: Optional[float] = Field(None, ge=0)
    yarn_beta_slow: Optional[float] = Field(None, ge=0)
    yarn_beta_fast: Optional[float] = Field(None, ge=0)

    # KV cache
    no_kv_offload: bool = False
    cache_type_k: Optional[CacheType] = None
    cache_type_v: Optional[CacheType] = None
    defrag_thold: Optional[float] = None

    # GPU
    device: Optional[List[str]] = None
    gpu_layers: Optional[int] = Field(None, ge=0)
    split_mode: Optional[Literal["none", "layer", "row"]] = None
    tensor_split: Optional[List[float]] = None
    main_gpu: Optional[int] = Field(None, ge=0)

    # Speculative decoding
    model_draft: Optional[str] = None
    draft_max: Optional[int] = Field(None, ge=0)
    draft_min: Optional[int] = Field(None, ge=0)
    gpu_layers_draft: Optional[int] = Field(None, ge=0)

    # Model behaviour
    lora: List[str] = Field(default_factory=list)
    pooling: Optional[Pooling] = None
    jinja: bool = False
    chat_template: Optional[str] = None
    reasoning_format: Optional[Literal["none", "deepseek", "auto"]] = None
    reasoning_budget: Optional[Literal[0, -1]] = None

    @field_validator("threads", "threads_batch")
    @classmethod
    def validate_thread_count(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v != -1 and v < 1:
            raise ValueError("thread count must be -1 (auto) or at least 1")
        return v

    @field_validator("tensor_split")
    @classmethod
    def validate_tensor_split(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None:
            if not v or any(x < 0 for x in v):
                raise ValueError("tensor_split must be a non-empty list of non-negative proportions")
            if sum(v) <= 0:
                raise ValueError("tensor_split must not be all zeros")
        return v

    @field_validator("defrag_thold")
    @classmethod
    def validate_defrag_thold(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v > 1.0:
            raise ValueError("defrag_thold must be <= 1.0 (negative disables)")
        return v

    @model_validator(mode="after")
    def validate_combinations(self) -> "ServerArgs":
        sources = [s for s in (self.model, self.model_url, self.hf_repo) if s]
        if len(sources) != 1:
            raise ValueError("exactly one of model, model_url or hf_repo must be set")
        if (self.hf_file or self.hf_token) and not self.hf_repo:
            raise ValueError("hf_file and hf_token require hf_repo")
        if self.tensor_split is not None and self.gpu_layers == 0:
            raise ValueError("tensor_split has no effect with gpu_layers=0")
        if self.batch_size is not None and self.ubatch_size is not None and self.ubatch_size > self.batch_size:
            raise ValueError("ubatch_size must not exceed batch_size")
        if self.cache_type_v not in (None, "f32", "f16", "bf16") and not self.flash_attn:
            raise ValueError("a quantized V cache requires flash_attn")
        if (self.draft_min is not None and self.draft_max is not None
                and self.draft_min > self.draft_max):
            raise ValueError("draft_min must not exceed draft_max")
        if any(v is not None for v in (self.draft_max, self.draft_min, self.gpu_layers_draft)) and not self.model_draft:
            raise ValueError("draft settings require model_draft")
        return self

    @classmethod
    def default(cls, **overrides) -> "ServerArgs":
        """Arguments for the default model, with optional overrides."""
        if not any(overrides.get(k) for k in ("model", "model_url", "hf_repo")):
            overrides["model_url"] = DEFAULT_MODEL_URL
        return cls(**overrides)

    @property
    def model_name(self) -> str:
        return model_name_from_source(self.model, self.model_url, self.hf_repo)

    @property
    def downloads_model(self) -> bool:
        """Whether the server fetches the model itself at startup."""
        return self.model is None

    @property
    def wants_http(self) -> bool:
        """True when the arguments require a TCP listener instead of a socket file."""
        if self.host is not None and self.host.endswith(".sock"):
            return False
        return self.webui or self.host is not None or self.port is not None

    def apply_plan(self, plan: ResourcePlan) -> "ServerArgs":
        """Return a copy of these arguments with a ResourcePlan filling the fields left unset."""
        data = self.model_dump()
        planned = {
            "gpu_layers": plan.gpu_layers,
            "ctx_size": plan.ctx_size,
            "threads": plan.threads,
            "threads_batch": plan.threads_batch,
        }
        for key, value in planned.items():
            if data[key] is None:
                data[key] = value
        gpu_layers = data["gpu_layers"]
        if gpu_layers > 0 and data["tensor_split"] is None and data["main_gpu"] is None:
            if plan.tensor_split and len(plan.tensor_split) > 1:
                data["tensor_split"] = plan.tensor_split
                data["main_gpu"] = plan.main_gpu
                data["split_mode"] = data.get("split_mode") or "layer"
            elif plan.main_gpu is not None:
                data["main_gpu"] = plan.main_gpu
        return ServerArgs.model_validate(data)

    def with_endpoint(self, host: str, port: Optional[int] = None) -> "ServerArgs":
        data = self.model_dump()
        data.update(host=host, port=port)
        if data.get("alias") is None:
            data["alias"] = self.model_name
        return ServerArgs.model_validate(data)

    def to_argv(self) -> List[str]:
        """Render the arguments as llama-server flags in a stable order."""
        argv: List[str] = []
        for field, flag, kind in _FLAGS:
            value = getattr(self, field)
            if value is None or value is False or value == []:
                continue
            if kind == "flag":
                argv.append(flag)
            elif kind == "list":
                argv += [flag, ",".join(str(v) for v in value)]
            elif kind == "repeat":
                for item in value:
                    argv += [flag, str(item)]
            else:
                argv += [flag, str(value)]
        if not self.webui:
            argv.append("--no-webui")
        return argv
