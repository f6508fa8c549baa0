"""Embedding clients: one wrapper per embedding provider.

Every client exposes the same small surface (``embed``, ``dimensions``,
``max_input_size``, ``preferred_batch_size``, ``is_healthy``) so the batcher
and provider selector never depend on a concrete provider.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Any

import httpx
from loguru import logger

from ..config.settings import ProviderConfig
from .exceptions import ConfigError, EmbeddingError, EmbeddingTimeoutError


def get_model_dimension(model_name: str) -> int:
    """Best-effort embedding dimension for well-known model names."""
    lowered = model_name.lower()
    if "minilm" in lowered:
        return 384
    if "text-embedding-3-large" in lowered:
        return 3072
    if "text-embedding-3-small" in lowered or "ada-002" in lowered:
        return 1536
    if "nomic-embed-text" in lowered:
        return 768
    if "mxbai-embed-large" in lowered:
        return 1024
    # GraphCodeBERT, CodeBERT, and most code models are 768d
    return 768


class EmbeddingClient(ABC):
    """Capability interface for one embedding provider."""

    def __init__(
        self,
        name: str,
        max_input_size: int = 8192,
        preferred_batch_size: int = 32,
        dimensions: int | None = None,
    ) -> None:
        self.name = name
        self.max_input_size = max_input_size
        self.preferred_batch_size = preferred_batch_size
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int | None:
        """Declared vector length (None until the provider reports it)."""
        return self._dimensions

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts, one vector per text, in input order.

        Raises:
            EmbeddingError: If the provider call fails
        """
        ...

    async def is_healthy(self) -> bool:
        try:
            vectors = await self.embed(["health check"])
        except EmbeddingError as e:
            logger.debug(f"Health check failed for {self.name}: {e}")
            return False
        return len(vectors) == 1 and bool(vectors[0])

    async def close(self) -> None:
        return None

    def _record_dimensions(self, vectors: list[list[float]]) -> None:
        if vectors and self._dimensions is None:
            self._dimensions = len(vectors[0])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class SentenceTransformerEmbeddingClient(EmbeddingClient):
    """Local sentence-transformers model, loaded lazily on first use."""

    def __init__(
        self,
        model_name: str,
        max_input_size: int = 8192,
        preferred_batch_size: int = 32,
        dimensions: int | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(
            name or f"sentence-transformers:{model_name}",
            max_input_size=max_input_size,
            preferred_batch_size=preferred_batch_size,
            dimensions=dimensions or get_model_dimension(model_name),
        )
        self.model_name = model_name
        self._model = None
        self._load_lock = asyncio.Lock()

    def _load_model(self):
        from sentence_transformers import SentenceTransformer

        device = os.environ.get("MCP_CODEBASE_INDEX_DEVICE", "").lower() or None
        model = SentenceTransformer(self.model_name, device=device)
        actual_dims = model.get_sentence_embedding_dimension()
        if actual_dims and actual_dims != self._dimensions:
            logger.warning(
                f"Model dimension for {self.model_name} is {actual_dims}, "
                f"expected {self._dimensions}; using {actual_dims}"
            )
            self._dimensions = actual_dims
        logger.info(
            f"Loaded embedding model {self.model_name} on {model.device} "
            f"with {self._dimensions} dimensions"
        )
        return model

    async def _ensure_model(self):
        async with self._load_lock:
            if self._model is None:
                try:
                    self._model = await asyncio.to_thread(self._load_model)
                except Exception as e:
                    logger.error(f"Failed to load embedding model {self.model_name}: {e}")
                    raise EmbeddingError(f"Failed to load embedding model: {e}") from e
        return self._model

    async def embed(self, texts: list[str]) -> list[list[float]]:
        model = await self._ensure_model()
        try:
            embeddings = await asyncio.to_thread(
                model.encode,
                texts,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise EmbeddingError(f"Embedding generation failed: {e}") from e
        vectors = [embedding.tolist() for embedding in embeddings]
        self._record_dimensions(vectors)
        return vectors


class HttpEmbeddingClient(EmbeddingClient):
    """Shared httpx plumbing for HTTP embedding providers."""

    provider_label = "Embedding"

    def __init__(
        self,
        name: str,
        base_url: str,
        model: str,
        timeout: float = 30.0,
        api_key: str | None = None,
        max_input_size: int = 8192,
        preferred_batch_size: int = 32,
        dimensions: int | None = None,
    ) -> None:
        super().__init__(
            name,
            max_input_size=max_input_size,
            preferred_batch_size=preferred_batch_size,
            dimensions=dimensions,
        )
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.api_key = api_key
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, headers=self._headers()
            )
        return self._client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._get_client().post(path, json=payload)
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            logger.error(f"{self.provider_label} API timeout after {self.timeout}s")
            raise EmbeddingTimeoutError(
                f"{self.provider_label} request timed out after {self.timeout} seconds"
            ) from e

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error_msg = f"{self.provider_label} API error (HTTP {status_code})"
            if status_code == 401:
                error_msg = f"Invalid {self.provider_label} API key."
            elif status_code == 429:
                error_msg = f"{self.provider_label} API rate limit exceeded."
            elif status_code >= 500:
                error_msg = f"{self.provider_label} API server error."
            logger.error(error_msg)
            raise EmbeddingError(error_msg, context={"status_code": status_code}) from e

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.provider_label} API request failed: {e}")
            raise EmbeddingError(f"{self.provider_label} request failed: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OllamaEmbeddingClient(HttpEmbeddingClient):
    """Ollama ``/api/embed`` endpoint."""

    provider_label = "Ollama"
    DEFAULT_BASE_URL = "http://localhost:11434"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        data = await self._post("/api/embed", {"model": self.model, "input": texts})
        vectors = data.get("embeddings")
        if not isinstance(vectors, list):
            raise EmbeddingError("Ollama response did not contain 'embeddings'")
        self._record_dimensions(vectors)
        return vectors

    async def is_healthy(self) -> bool:
        try:
            response = await self._get_client().get("/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False


class OpenAIEmbeddingClient(HttpEmbeddingClient):
    """OpenAI-compatible ``/embeddings`` endpoint (OpenAI, DashScope, vLLM...)."""

    provider_label = "OpenAI"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"

    async def embed(self, texts: list[str]) -> list[list[float]]:
        payload: dict[str, Any] = {"model": self.model, "input": texts}
        if self._dimensions is not None and self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self._dimensions
        data = await self._post("/embeddings", payload)
        items = data.get("data")
        if not isinstance(items, list):
            raise EmbeddingError("OpenAI response did not contain 'data'")
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        vectors = [item["embedding"] for item in ordered]
        self._record_dimensions(vectors)
        return vectors


def create_embedding_client(config: ProviderConfig) -> EmbeddingClient:
    """Build a client from provider configuration.

    Raises:
        ConfigError: If an HTTP provider requiring a key has none
    """
    if config.kind == "sentence-transformers":
        return SentenceTransformerEmbeddingClient(
            config.model,
            max_input_size=config.max_input_size,
            preferred_batch_size=config.preferred_batch_size,
            dimensions=config.dimensions,
            name=config.name,
        )

    if config.kind == "ollama":
        return OllamaEmbeddingClient(
            config.display_name,
            base_url=config.base_url or OllamaEmbeddingClient.DEFAULT_BASE_URL,
            model=config.model,
            timeout=config.timeout_seconds,
            max_input_size=config.max_input_size,
            preferred_batch_size=config.preferred_batch_size,
            dimensions=config.dimensions or get_model_dimension(config.model),
        )

    api_key = config.resolve_api_key() or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ConfigError(
            f"No API key configured for embedding provider {config.display_name}. "
            "Set api_key, api_key_env or OPENAI_API_KEY."
        )
    return OpenAIEmbeddingClient(
        config.display_name,
        base_url=config.base_url or OpenAIEmbeddingClient.DEFAULT_BASE_URL,
        model=config.model,
        timeout=config.timeout_seconds,
        api_key=api_key,
        max_input_size=config.max_input_size,
        preferred_batch_size=config.preferred_batch_size,
        dimensions=config.dimensions or get_model_dimension(config.model),
    )
