"""
Request and response models for the typed llama-server endpoints.

Requests validate their field constraints on construction; responses accept
unknown fields so newer server builds keep deserializing.
"""
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Sampler = Literal["dry", "top_k", "typ_p", "top_p", "min_p", "xtc", "temperature", "penalties"]
Pooling = Literal["none", "mean", "cls", "last", "rank"]


class SamplingParams(BaseModel):
    """Sampling controls shared by /completion and /infill; flattened into the request body."""

    model_config = ConfigDict(extra="forbid")

    temperature: Optional[float] = Field(None, ge=0)
    top_k: Optional[int] = Field(None, ge=0)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    min_p: Optional[float] = Field(None, ge=0, le=1)
    typical_p: Optional[float] = Field(None, ge=0, le=1)
    dynatemp_range: Optional[float] = Field(None, ge=0)
    dynatemp_exponent: Optional[float] = Field(None, ge=0)
    repeat_penalty: Optional[float] = Field(None, ge=0)
    repeat_last_n: Optional[int] = Field(None, ge=-1)
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    dry_multiplier: Optional[float] = Field(None, ge=0)
    dry_base: Optional[float] = Field(None, ge=1)
    dry_allowed_length: Optional[int] = Field(None, ge=0)
    dry_penalty_last_n: Optional[int] = Field(None, ge=-1)
    dry_sequence_breakers: Optional[List[str]] = None
    xtc_probability: Optional[float] = Field(None, ge=0, le=1)
    xtc_threshold: Optional[float] = Field(None, ge=0, le=1)
    mirostat: Optional[Literal[0, 1, 2]] = None
    mirostat_tau: Optional[float] = Field(None, ge=0)
    mirostat_eta: Optional[float] = Field(None, ge=0)
    logit_bias: Optional[List[List[Union[int, str, float, bool]]]] = None
    n_probs: Optional[int] = Field(None, ge=0)
    min_keep: Optional[int] = Field(None, ge=0)
    samplers: Optional[List[Sampler]] = None
    seed: Optional[int] = None


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def to_body(self) -> Dict[str, Any]:
        """JSON body with unset options omitted and sampling params flattened."""
        body = self.model_dump(exclude_none=True, exclude={"sampling"})
        sampling = getattr(self, "sampling", None)
        if sampling is not None:
            body.update(sampling.model_dump(exclude_none=True))
        return body


def _check_token_ids(tokens: List[int]) -> List[int]:
    if any(t < 0 for t in tokens):
        raise ValueError("token ids must be non-negative")
    return tokens


class CompletionRequest(_Request):
    """POST /completion.

    Attributes:
        prompt: Text prompt or a sequence of token ids.
        n_predict: Maximum tokens to generate (-1 for unlimited).
        sampling: Sampling parameters, sent flattened.
    """

    prompt: Union[str, List[int]]
    n_predict: Optional[int] = Field(None, ge=-1)
    stop: Optional[List[str]] = None
    grammar: Optional[str] = None
    json_schema: Optional[Dict[str, Any]] = None
    n_keep: Optional[int] = Field(None, ge=-1)
    stream: Literal[False] = False
    cache_prompt: Optional[bool] = None
    return_tokens: Optional[bool] = None
    id_slot: Optional[int] = Field(None, ge=-1)
    lora: Optional[List[Dict[str, Union[int, float]]]] = None
    response_fields: Optional[List[str]] = None
    sampling: Optional[SamplingParams] = None

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: Union[str, List[int]]) -> Union[str, List[int]]:
        if isinstance(v, str):
            if not v:
                raise ValueError("prompt must not be empty")
            return v
        if not v:
            raise ValueError("prompt must not be empty")
        return _check_token_ids(v)

    @model_validator(mode="after")
    def validate_grammar(self) -> "CompletionRequest":
        if self.grammar is not None and self.json_schema is not None:
            raise ValueError("grammar and json_schema are mutually exclusive")
        return self

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["stream"] = False
        return body


class InfillExtra(BaseModel):
    filename: str
    text: str


class InfillRequest(_Request):
    """POST /infill (fill-in-the-middle)."""
    input_prefix: str = ""
    input_suffix: str = ""
    input_extra: Optional[List[InfillExtra]] = None
    prompt: Optional[str] = None
    n_predict: Optional[int] = Field(None, ge=-1)
    stop: Optional[List[str]] = None
    n_keep: Optional[int] = Field(None, ge=-1)
    cache_prompt: Optional[bool] = None
    id_slot: Optional[int] = Field(None, ge=-1)
    sampling: Optional[SamplingParams] = None

    @model_validator(mode="after")
    def validate_context(self) -> "InfillRequest":
        if not self.input_prefix and not self.input_suffix:
            raise ValueError("infill needs a non-empty input_prefix or input_suffix")
        return self


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CompletionResponse(BaseModel):
    """Response of /completion and /infill."""

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    content: str = ""
    tokens: List[int] = Field(default_factory=list)
    stop: bool = True
    model: Optional[str] = None
    id_slot: Optional[int] = None
    stop_type: Optional[str] = None
    stopping_word: Optional[str] = None
    tokens_cached: Optional[int] = None
    tokens_evaluated: Optional[int] = None
    tokens_predicted: Optional[int] = None
    truncated: Optional[bool] = None
    timings: Optional[Dict[str, Any]] = None
    generation_settings: Optional[Dict[str, Any]] = None
    completion_probabilities: Optional[List[Dict[str, Any]]] = None

    @property
    def usage(self) -> CompletionUsage:
        return CompletionUsage(
            prompt_tokens=self.tokens_evaluated or 0,
            completion_tokens=self.tokens_predicted or 0,
        )


class EmbeddingsRequest(_Request):
    """POST /embeddings; a single string or a batch of non-empty strings."""
    input: Union[str, List[str]]
    pooling: Optional[Pooling] = None

    @field_validator("input")
    @classmethod
    def validate_input(cls, v: Union[str, List[str]]) -> Union[str, List[str]]:
        items = [v] if isinstance(v, str) else v
        if not items:
            raise ValueError("input must contain at least one text")
        if any(not item for item in items):
            raise ValueError("input texts must not be empty")
        return v

    @property
    def batch_size(self) -> int:
        return 1 if isinstance(self.input, str) else len(self.input)


class EmbeddingItem(BaseModel):
    index: int = 0
    # One vector per pooled input, or one per token when pooling is 'none'.
    embedding: List[List[float]]

    @field_validator("embedding", mode="before")
    @classmethod
    def normalize_embedding(cls, v: Any) -> Any:
        if isinstance(v, list) and v and not isinstance(v[0], list):
            return [v]
        return v

    @property
    def vector(self) -> List[float]:
        return self.embedding[0]


class TokenizeRequest(_Request):
    content: str = Field(..., min_length=1)
    add_special: Optional[bool] = None
    with_pieces: Optional[bool] = None


class TokenPiece(BaseModel):
    id: int
    piece: Union[str, List[int]]


class TokenizeResponse(BaseModel):
    tokens: List[Union[int, TokenPiece]]

    @property
    def ids(self) -> List[int]:
        return [t if isinstance(t, int) else t.id for t in self.tokens]


class DetokenizeRequest(_Request):
    tokens: List[int]

    @field_validator("tokens")
    @classmethod
    def validate_tokens(cls, v: List[int]) -> List[int]:
        return _check_token_ids(v)


class DetokenizeResponse(BaseModel):
    content: str


class Modalities(BaseModel):
    vision: bool = False
    audio: bool = False


class PropsResponse(BaseModel):
    """GET /props."""

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    default_generation_settings: Optional[Dict[str, Any]] = None
    total_slots: Optional[int] = None
    model_path: Optional[str] = None
    chat_template: Optional[str] = None
    bos_token: Optional[str] = None
    eos_token: Optional[str] = None
    build_info: Optional[str] = None
    modalities: Optional[Modalities] = None

    @property
    def model_name(self) -> Optional[str]:
        if not self.model_path:
            return None
        return Path(self.model_path.replace("\\", "/")).stem.lower()
