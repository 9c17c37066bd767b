"""Unit tests for codeindex.embedders."""

import json
from types import SimpleNamespace
from unittest import mock

import httpx
import numpy as np
import openai
import pytest

from codeindex import embedders
from codeindex.config import MAX_BATCH_TOKENS, MAX_ITEM_TOKENS, EmbedderConfig
from codeindex.embedders import (
    OllamaEmbedder,
    OpenAICompatibleEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    _token_batches,
    create_embedder,
)
from codeindex.models import ConfigurationError, EmbeddingError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _openai_response(vectors, prompt_tokens=3, total_tokens=3):
    return SimpleNamespace(
        data=[SimpleNamespace(embedding=v) for v in vectors],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, total_tokens=total_tokens),
    )


def _openai_client(*responses):
    client = mock.MagicMock()
    client.embeddings.create = mock.AsyncMock(side_effect=list(responses))
    return client


def _rate_limit_error():
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("rate limited", response=response, body=None)


# ---------------------------------------------------------------------------
# Token batching
# ---------------------------------------------------------------------------


class TestTokenBatches:
    def test_small_texts_share_a_batch(self):
        assert _token_batches(["a", "b", "c"]) == [["a", "b", "c"]]

    def test_splits_when_budget_exceeded(self):
        chunk = "x" * (MAX_ITEM_TOKENS * 4)
        count = MAX_BATCH_TOKENS // MAX_ITEM_TOKENS + 1
        batches = _token_batches([chunk] * count)
        assert len(batches) == 2
        assert sum(len(b) for b in batches) == count

    def test_oversized_item_is_truncated_not_dropped(self):
        huge = "y" * (MAX_ITEM_TOKENS * 4 + 400)
        batches = _token_batches(["short", huge])
        flat = [t for b in batches for t in b]
        assert len(flat) == 2
        assert len(flat[1]) == MAX_ITEM_TOKENS * 4

    def test_empty(self):
        assert _token_batches([]) == []


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class TestOpenAIEmbedder:
    @pytest.mark.asyncio
    async def test_returns_vectors_in_order(self):
        client = _openai_client(_openai_response([[1.0], [2.0]]))
        embedder = OpenAIEmbedder(api_key="k", client=client)
        response = await embedder.create_embeddings(["a", "b"])
        assert response.embeddings == [[1.0], [2.0]]
        assert response.usage == {"prompt_tokens": 3, "total_tokens": 3}
        client.embeddings.create.assert_awaited_once_with(
            input=["a", "b"], model="text-embedding-3-small"
        )

    @pytest.mark.asyncio
    async def test_model_override(self):
        client = _openai_client(_openai_response([[1.0]]))
        embedder = OpenAIEmbedder(api_key="k", model="default", client=client)
        await embedder.create_embeddings(["a"], model="other")
        assert client.embeddings.create.await_args.kwargs["model"] == "other"

    @pytest.mark.asyncio
    async def test_retries_rate_limit(self):
        client = _openai_client(_rate_limit_error(), _openai_response([[1.0]]))
        embedder = OpenAIEmbedder(api_key="k", client=client)
        with mock.patch.object(embedders.asyncio, "sleep", mock.AsyncMock()) as sleep:
            response = await embedder.create_embeddings(["a"])
        assert response.embeddings == [[1.0]]
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        client = _openai_client(*[_rate_limit_error() for _ in range(3)])
        embedder = OpenAIEmbedder(api_key="k", client=client)
        with mock.patch.object(embedders.asyncio, "sleep", mock.AsyncMock()):
            with pytest.raises(EmbeddingError, match="after 3 attempts"):
                await embedder.create_embeddings(["a"])
        assert client.embeddings.create.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_wrapped(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        client = _openai_client(openai.APIConnectionError(request=request))
        embedder = OpenAIEmbedder(api_key="k", client=client)
        with pytest.raises(EmbeddingError):
            await embedder.create_embeddings(["a"])
        client.embeddings.create.assert_awaited_once()

    def test_compatible_requires_base_url_and_key(self):
        with pytest.raises(ConfigurationError):
            OpenAICompatibleEmbedder(base_url="", api_key="k", client=mock.MagicMock())
        with pytest.raises(ConfigurationError):
            OpenAICompatibleEmbedder(base_url="http://x", api_key="", client=mock.MagicMock())

    def test_compatible_info(self):
        embedder = OpenAICompatibleEmbedder(
            base_url="http://x", api_key="k", client=mock.MagicMock()
        )
        assert embedder.embedder_info == {"name": "openai-compatible"}


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class TestOllamaEmbedder:
    def _embedder(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return OllamaEmbedder(base_url="http://ollama:11434/", model="m", client=client)

    @pytest.mark.asyncio
    async def test_posts_to_api_embed(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2]]})

        embedder = self._embedder(handler)
        response = await embedder.create_embeddings(["hello"])
        await embedder.close()
        assert response.embeddings == [[0.1, 0.2]]
        assert seen["url"] == "http://ollama:11434/api/embed"
        assert seen["body"] == {"model": "m", "input": ["hello"]}

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        embedder = self._embedder(lambda request: httpx.Response(500, text="down"))
        with pytest.raises(EmbeddingError, match="status 500"):
            await embedder.create_embeddings(["hello"])

    @pytest.mark.asyncio
    async def test_missing_embeddings_key(self):
        embedder = self._embedder(lambda request: httpx.Response(200, json={"other": 1}))
        with pytest.raises(EmbeddingError, match="embeddings"):
            await embedder.create_embeddings(["hello"])

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EmbeddingError):
            await self._embedder(handler).create_embeddings(["hello"])


# ---------------------------------------------------------------------------
# sentence-transformers
# ---------------------------------------------------------------------------


class TestSentenceTransformerEmbedder:
    @pytest.mark.asyncio
    async def test_encodes_in_worker_thread(self):
        model = mock.Mock()
        model.encode.return_value = np.array([[1, 2], [3, 4]], dtype=np.float64)
        embedder = SentenceTransformerEmbedder()
        with mock.patch.object(embedder, "_get_model", return_value=model):
            response = await embedder.create_embeddings(["a", "b"])
        assert response.embeddings == [[1.0, 2.0], [3.0, 4.0]]
        model.encode.assert_called_once_with(
            ["a", "b"], convert_to_numpy=True, show_progress_bar=False
        )

    @pytest.mark.asyncio
    async def test_empty_input(self):
        embedder = SentenceTransformerEmbedder()
        with mock.patch.object(embedder, "_get_model") as get_model:
            response = await embedder.create_embeddings([])
        assert response.embeddings == []
        get_model.assert_not_called()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateEmbedder:
    def test_ollama(self):
        embedder = create_embedder(EmbedderConfig(provider="ollama", model="m", dimension=8))
        assert isinstance(embedder, OllamaEmbedder)
        assert embedder.default_model == "m"

    def test_sentence_transformers(self):
        config = EmbedderConfig(provider="sentence-transformers", model="mini", dimension=384)
        assert isinstance(create_embedder(config), SentenceTransformerEmbedder)

    def test_openai_requires_key(self):
        with pytest.raises(ConfigurationError):
            create_embedder(EmbedderConfig(provider="openai", model="m", dimension=8))

    def test_openai(self):
        config = EmbedderConfig(provider="openai", model="m", dimension=8, api_key="k")
        assert isinstance(create_embedder(config), OpenAIEmbedder)

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            create_embedder(EmbedderConfig(provider="nope", model="m", dimension=8))
