"""
Typed client for the llama-server HTTP API.
"""
import asyncio
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from llama_lifecycle.entities.endpoints import (
    CompletionRequest,
    CompletionResponse,
    DetokenizeRequest,
    DetokenizeResponse,
    EmbeddingItem,
    EmbeddingsRequest,
    InfillRequest,
    PropsResponse,
    TokenizeRequest,
    TokenizeResponse,
)
from llama_lifecycle.entities.server import ServerStatus
from llama_lifecycle.shared.errors import InvalidRequest, ProtocolError
from llama_lifecycle.shared.health_checker import HealthChecker
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import TransportProtocol

logger = Logger.get(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)
ResponseT = TypeVar("ResponseT", bound=BaseModel)


class LlamaClient:
    """
    Typed endpoint methods over a transport.

    Each method accepts either a request model or its fields as keyword
    arguments; invalid input raises InvalidRequest before anything is sent.
    """

    def __init__(self, transport: TransportProtocol, timeout: Optional[float] = None):
        self.transport = transport
        self.timeout = timeout

    @staticmethod
    def _build(model: Type[RequestT], request: Optional[RequestT], fields: Dict[str, Any]) -> RequestT:
        if request is not None:
            if fields:
                raise InvalidRequest(f"Pass either a {model.__name__} or keyword fields, not both")
            return request
        try:
            return model(**fields)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid {model.__name__}: {e}") from e

    @staticmethod
    def _parse(model: Type[ResponseT], data: Any, path: str) -> ResponseT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"Unexpected response from {path}: {e}") from e

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.timeout if timeout is None else timeout

    def _post(self, path: str, body: Any, timeout: Optional[float]) -> Any:
        return self.transport.request("POST", path, body=body, timeout=self._timeout(timeout))

    def _get(self, path: str, timeout: Optional[float]) -> Any:
        return self.transport.request("GET", path, timeout=self._timeout(timeout))

    def completion(self, request: Optional[CompletionRequest] = None, timeout: Optional[float] = None,
                   **fields) -> CompletionResponse:
        request = self._build(CompletionRequest, request, fields)
        return self._parse(CompletionResponse, self._post("/completion", request.to_body(), timeout), "/completion")

    def infill(self, request: Optional[InfillRequest] = None, timeout: Optional[float] = None,
               **fields) -> CompletionResponse:
        request = self._build(InfillRequest, request, fields)
        return self._parse(CompletionResponse, self._post("/infill", request.to_body(), timeout), "/infill")

    @staticmethod
    def _embedding_items(data: Any, path: str) -> List[EmbeddingItem]:
        if isinstance(data, dict):
            data = data.get("data", [data])
        if not isinstance(data, list):
            raise ProtocolError(f"Unexpected response from {path}: expected a list of embeddings")
        items = [LlamaClient._parse(EmbeddingItem, item, path) for item in data]
        return sorted(items, key=lambda item: item.index)

    def embeddings(self, request: Optional[EmbeddingsRequest] = None, timeout: Optional[float] = None,
                   **fields) -> List[EmbeddingItem]:
        """One EmbeddingItem per input text, ordered by index."""
        request = self._build(EmbeddingsRequest, request, fields)
        items = self._embedding_items(self._post("/embeddings", request.to_body(), timeout), "/embeddings")
        if len(items) != request.batch_size:
            raise ProtocolError(f"/embeddings returned {len(items)} items for {request.batch_size} inputs")
        return items

    def embedding(self, content: str, timeout: Optional[float] = None) -> EmbeddingItem:
        """Embed a single text through the legacy /embedding endpoint."""
        request = self._build(EmbeddingsRequest, None, {"input": content})
        if request.batch_size != 1:
            raise InvalidRequest("embedding takes exactly one text")
        items = self._embedding_items(self._post("/embedding", {"content": content}, timeout), "/embedding")
        if len(items) != 1:
            raise ProtocolError(f"/embedding returned {len(items)} items, expected 1")
        return items[0]

    def tokenize(self, request: Optional[TokenizeRequest] = None, timeout: Optional[float] = None,
                 **fields) -> TokenizeResponse:
        request = self._build(TokenizeRequest, request, fields)
        return self._parse(TokenizeResponse, self._post("/tokenize", request.to_body(), timeout), "/tokenize")

    def detokenize(self, request: Optional[DetokenizeRequest] = None, timeout: Optional[float] = None,
                   **fields) -> DetokenizeResponse:
        request = self._build(DetokenizeRequest, request, fields)
        return self._parse(DetokenizeResponse, self._post("/detokenize", request.to_body(), timeout), "/detokenize")

    def props(self, timeout: Optional[float] = None) -> PropsResponse:
        return self._parse(PropsResponse, self._get("/props", timeout) or {}, "/props")

    def status(self, timeout: float = 5.0) -> ServerStatus:
        return HealthChecker.probe_status(self.transport, timeout=timeout)

    # OpenAI-compatible passthroughs

    def openai_models(self, timeout: Optional[float] = None) -> Any:
        return self._get("/v1/models", timeout)

    def openai_completions(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        return self._post("/v1/completions", self._non_streaming(body), timeout)

    def openai_chat_completions(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        return self._post("/v1/chat/completions", self._non_streaming(body), timeout)

    def openai_embeddings(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        return self._post("/v1/embeddings", body, timeout)

    @staticmethod
    def _non_streaming(body: Dict[str, Any]) -> Dict[str, Any]:
        if body.get("stream"):
            raise InvalidRequest("Streaming responses are not supported")
        return body


class AsyncLlamaClient:
    """Awaitable facade over LlamaClient; every call runs in a worker thread."""

    def __init__(self, client: LlamaClient):
        self.client = client

    async def completion(self, request: Optional[CompletionRequest] = None, **kwargs) -> CompletionResponse:
        return await asyncio.to_thread(self.client.completion, request, **kwargs)

    async def infill(self, request: Optional[InfillRequest] = None, **kwargs) -> CompletionResponse:
        return await asyncio.to_thread(self.client.infill, request, **kwargs)

    async def embeddings(self, request: Optional[EmbeddingsRequest] = None, **kwargs) -> List[EmbeddingItem]:
        return await asyncio.to_thread(self.client.embeddings, request, **kwargs)

    async def embedding(self, content: str, timeout: Optional[float] = None) -> EmbeddingItem:
        return await asyncio.to_thread(self.client.embedding, content, timeout)

    async def tokenize(self, request: Optional[TokenizeRequest] = None, **kwargs) -> TokenizeResponse:
        return await asyncio.to_thread(self.client.tokenize, request, **kwargs)

    async def detokenize(self, request: Optional[DetokenizeRequest] = None, **kwargs) -> DetokenizeResponse:
        return await asyncio.to_thread(self.client.detokenize, request, **kwargs)

    async def props(self, timeout: Optional[float] = None) -> PropsResponse:
        return await asyncio.to_thread(self.client.props, timeout)

    async def status(self, timeout: float = 5.0) -> ServerStatus:
        return await asyncio.to_thread(self.client.status, timeout)

    async def openai_chat_completions(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        return await asyncio.to_thread(self.client.openai_chat_completions, body, timeout)

    async def openai_completions(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        return await asyncio.to_thread(self.client.openai_completions, body, timeout)

    async def openai_embeddings(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        return await asyncio.to_thread(self.client.openai_embeddings, body, timeout)

    async def openai_models(self, timeout: Optional[float] = None) -> Any:
        return await asyncio.to_thread(self.client.openai_models, timeout)
