"""Embedding providers.

Every provider exposes ``create_embeddings(texts, model=None)`` returning
one vector per input text, in input order, wrapped in an
:class:`EmbeddingResponse`. ``create_embedder`` picks the implementation
from the configured provider tag.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Protocol

import httpx
import numpy as np
import openai
import tenacity
from openai import AsyncOpenAI

from codeindex.config import (
    INITIAL_RETRY_DELAY_MS,
    MAX_BATCH_RETRIES,
    MAX_BATCH_TOKENS,
    MAX_ITEM_TOKENS,
    EmbedderConfig,
)
from codeindex.models import ConfigurationError, EmbeddingError, EmbeddingResponse

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text:latest"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


def _log_rate_limit(retry_state: tenacity.RetryCallState) -> None:
    logger.warning(
        "Rate limited, retrying in %.1f s (attempt %d)",
        retry_state.upcoming_sleep,
        retry_state.attempt_number,
    )


class Embedder(Protocol):
    @property
    def embedder_info(self) -> dict[str, str]: ...

    async def create_embeddings(
        self, texts: list[str], model: str | None = None
    ) -> EmbeddingResponse: ...


def _estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def _token_batches(texts: list[str]) -> list[list[str]]:
    """Group texts so each group stays under MAX_BATCH_TOKENS.

    Items over MAX_ITEM_TOKENS are truncated so the output keeps one
    vector per input.
    """
    batches: list[list[str]] = []
    current: list[str] = []
    current_tokens = 0
    for i, text in enumerate(texts):
        tokens = _estimate_tokens(text)
        if tokens > MAX_ITEM_TOKENS:
            logger.warning(
                "Text at index %d exceeds token limit (%d > %d), truncating",
                i,
                tokens,
                MAX_ITEM_TOKENS,
            )
            text = text[: MAX_ITEM_TOKENS * 4]
            tokens = MAX_ITEM_TOKENS
        if current and current_tokens + tokens > MAX_BATCH_TOKENS:
            batches.append(current)
            current = []
            current_tokens = 0
        current.append(text)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


# ── OpenAI ───────────────────────────────────────────────────────────────


class OpenAIEmbedder:
    """OpenAI embeddings with token-aware batching and 429 backoff."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        client: Any = None,
    ) -> None:
        self.default_model = model or DEFAULT_OPENAI_MODEL
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url or None)

    @property
    def embedder_info(self) -> dict[str, str]:
        return {"name": self.name}

    async def create_embeddings(
        self, texts: list[str], model: str | None = None
    ) -> EmbeddingResponse:
        model_to_use = model or self.default_model
        embeddings: list[list[float]] = []
        usage = {"prompt_tokens": 0, "total_tokens": 0}

        for batch in _token_batches(texts):
            vectors, batch_usage = await self._embed_with_retries(batch, model_to_use)
            embeddings.extend(vectors)
            usage["prompt_tokens"] += batch_usage.get("prompt_tokens", 0)
            usage["total_tokens"] += batch_usage.get("total_tokens", 0)

        return EmbeddingResponse(embeddings=embeddings, usage=usage)

    async def _embed_with_retries(
        self, batch: list[str], model: str
    ) -> tuple[list[list[float]], dict[str, int]]:
        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(openai.RateLimitError),
            stop=tenacity.stop_after_attempt(MAX_BATCH_RETRIES),
            wait=tenacity.wait_exponential(multiplier=INITIAL_RETRY_DELAY_MS / 1000),
            before_sleep=_log_rate_limit,
            sleep=asyncio.sleep,
            reraise=True,
        )
        try:
            response = await retrying(self._client.embeddings.create, input=batch, model=model)
        except openai.RateLimitError as e:
            raise EmbeddingError(
                f"Failed to create embeddings after {MAX_BATCH_RETRIES} attempts: {e}"
            ) from e
        except openai.OpenAIError as e:
            raise EmbeddingError(f"Failed to create embeddings: {e}") from e

        usage = getattr(response, "usage", None)
        return (
            [item.embedding for item in response.data],
            {
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
            },
        )


class OpenAICompatibleEmbedder(OpenAIEmbedder):
    """Any server speaking the OpenAI embeddings API."""

    name = "openai-compatible"

    def __init__(
        self, base_url: str, api_key: str, model: str | None = None, client: Any = None
    ) -> None:
        if not base_url:
            raise ConfigurationError("Base URL is required for OpenAI compatible embedder")
        if not api_key:
            raise ConfigurationError("API key is required for OpenAI compatible embedder")
        super().__init__(api_key=api_key, model=model, base_url=base_url, client=client)


# ── Ollama ───────────────────────────────────────────────────────────────


class OllamaEmbedder:
    """Embeddings from a local Ollama server via ``/api/embed``."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = (base_url or DEFAULT_OLLAMA_URL).rstrip("/")
        self.default_model = model or DEFAULT_OLLAMA_MODEL
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def embedder_info(self) -> dict[str, str]:
        return {"name": "ollama"}

    async def create_embeddings(
        self, texts: list[str], model: str | None = None
    ) -> EmbeddingResponse:
        url = f"{self.base_url}/api/embed"
        try:
            response = await self._client.post(
                url, json={"model": model or self.default_model, "input": texts}
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(
                f"Ollama API request failed with status {e.response.status_code}: "
                f"{e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Ollama embedding failed: {e}") from e

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list):
            raise EmbeddingError(
                'Invalid response from Ollama API: "embeddings" array not found'
            )
        return EmbeddingResponse(embeddings=embeddings)

    async def close(self) -> None:
        await self._client.aclose()


# ── sentence-transformers ────────────────────────────────────────────────


class SentenceTransformerEmbedder:
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model: str | None = None) -> None:
        self.default_model = model or DEFAULT_LOCAL_MODEL
        self._models: dict[str, Any] = {}

    @property
    def embedder_info(self) -> dict[str, str]:
        return {"name": "sentence-transformers"}

    def _get_model(self, name: str) -> Any:
        if name not in self._models:
            from sentence_transformers import SentenceTransformer

            # Silence the transformers load report
            logging.getLogger("transformers.modeling_utils").setLevel(logging.ERROR)
            try:
                self._models[name] = SentenceTransformer(name)
            except Exception as e:
                raise EmbeddingError(f"Failed to load embedding model '{name}': {e}") from e
        return self._models[name]

    def _encode(self, texts: list[str], name: str) -> list[list[float]]:
        model = self._get_model(name)
        vectors = model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return np.asarray(vectors, dtype=np.float32).tolist()

    async def create_embeddings(
        self, texts: list[str], model: str | None = None
    ) -> EmbeddingResponse:
        if not texts:
            return EmbeddingResponse(embeddings=[])
        vectors = await asyncio.to_thread(self._encode, texts, model or self.default_model)
        return EmbeddingResponse(embeddings=vectors)


# ── Factory ──────────────────────────────────────────────────────────────


def create_embedder(config: EmbedderConfig) -> Embedder:
    """Build the embedder selected by ``config.provider``."""
    provider = config.provider
    if provider == "openai":
        if not config.api_key:
            raise ConfigurationError("OpenAI API key is required")
        return OpenAIEmbedder(api_key=config.api_key, model=config.model)
    if provider == "openai-compatible":
        return OpenAICompatibleEmbedder(
            base_url=config.base_url, api_key=config.api_key, model=config.model
        )
    if provider == "ollama":
        return OllamaEmbedder(base_url=config.base_url or None, model=config.model)
    if provider == "sentence-transformers":
        return SentenceTransformerEmbedder(model=config.model)
    raise ConfigurationError(f"Unknown embedder provider: {provider!r}")
