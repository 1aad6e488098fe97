"""Unit tests for the Ollama embedding provider."""

import json

import httpx
import pytest

from synapse_memory.config import SynapseSettings
from synapse_memory.embedding.ollama import EMBED_PREFIX, EmbeddingError, OllamaClient

EMBED_URL = "http://localhost:11434/api/embed"


class TestOllamaClientInit:
    """Tests for OllamaClient initialization."""

    def test_default_values(self):
        client = OllamaClient()
        assert client.host == "http://localhost:11434"
        assert client.model == "mxbai-embed-large"
        assert client.timeout == 30.0
        assert client.dimension is None

    def test_host_trailing_slash_stripped(self):
        client = OllamaClient(host="http://custom:8080/")
        assert client.host == "http://custom:8080"

    def test_from_settings(self):
        settings = SynapseSettings(ollama_host="http://gpu-box:11434", ollama_model="nomic-embed-text", ollama_timeout=5)
        client = OllamaClient.from_settings(settings)
        assert client.host == "http://gpu-box:11434"
        assert client.model == "nomic-embed-text"
        assert client.timeout == 5.0


class TestEmbed:
    """Tests for single text embedding."""

    @pytest.mark.asyncio
    async def test_node_content_has_no_prefix(self, httpx_mock):
        """Stored node content is embedded as-is."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2, 0.3]]})

        async with OllamaClient() as client:
            result = await client.embed("likes chess")

        assert result == [0.1, 0.2, 0.3]
        payload = json.loads(httpx_mock.get_request().content)
        assert payload == {"model": "mxbai-embed-large", "input": "likes chess"}

    @pytest.mark.asyncio
    async def test_query_gets_prefix(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2, 0.3]]})

        async with OllamaClient() as client:
            await client.embed("does she like chess", is_query=True)

        payload = json.loads(httpx_mock.get_request().content)
        assert payload["input"] == f"{EMBED_PREFIX}does she like chess"

    @pytest.mark.asyncio
    async def test_query_without_prefix_for_other_models(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1]]})

        async with OllamaClient(model="nomic-embed-text") as client:
            await client.embed("chess", is_query=True)

        payload = json.loads(httpx_mock.get_request().content)
        assert payload["input"] == "chess"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_text_raises(self, text):
        async with OllamaClient() as client:
            with pytest.raises(ValueError, match="Text cannot be empty"):
                await client.embed(text)

    @pytest.mark.asyncio
    async def test_no_embeddings_returned(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": []})

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="No embedding returned"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_empty_vector_rejected(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[]]})

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="empty or malformed"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_invalid_json(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, text="not json")

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="invalid JSON"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_dimension_change_rejected(self, httpx_mock):
        """A provider that switches vector size mid-run is an error."""
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2]]})
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2, 0.3]]})

        async with OllamaClient() as client:
            await client.embed("first")
            assert client.dimension == 2
            with pytest.raises(EmbeddingError, match="dimension changed from 2 to 3"):
                await client.embed("second")


class TestEmbedBatch:
    """Tests for batch embedding."""

    @pytest.mark.asyncio
    async def test_single_batch(self, httpx_mock):
        vectors = [[0.1, 0.2], [0.3, 0.4], [0.5, 0.6]]
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": vectors})

        async with OllamaClient() as client:
            result = await client.embed_batch(["a", "b", "c"])

        assert result == vectors
        assert json.loads(httpx_mock.get_request().content)["input"] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_multiple_batches(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.5, 0.6]]})

        async with OllamaClient() as client:
            result = await client.embed_batch(["a", "b", "c"], batch_size=2)

        assert result == [[0.1, 0.2], [0.3, 0.4], [0.5, 0.6]]
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_empty_list_raises(self):
        async with OllamaClient() as client:
            with pytest.raises(ValueError, match="Texts list cannot be empty"):
                await client.embed_batch([])

    @pytest.mark.asyncio
    async def test_wrong_count(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2]]})

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="Expected 3 embeddings"):
                await client.embed_batch(["t1", "t2", "t3"])


class TestRetryLogic:
    """Tests for retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_retry_on_connect_error(self, httpx_mock, mocker):
        mock_sleep = mocker.patch("asyncio.sleep", return_value=None)

        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1, 0.2]]})

        async with OllamaClient() as client:
            result = await client.embed("test")

        assert result == [0.1, 0.2]
        assert mock_sleep.call_count == 2
        mock_sleep.assert_any_call(1.0)
        mock_sleep.assert_any_call(2.0)

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, httpx_mock):
        for _ in range(3):
            httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        async with OllamaClient(base_delay=0) as client:
            with pytest.raises(EmbeddingError, match="unreachable after 3 attempts"):
                await client.embed("test")

    @pytest.mark.asyncio
    async def test_timeout_not_retried(self, httpx_mock):
        httpx_mock.add_exception(httpx.ReadTimeout("Request timed out"))

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="timed out"):
                await client.embed("test")

        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_http_status_error_not_retried(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, status_code=500, text="Internal Server Error")

        async with OllamaClient() as client:
            with pytest.raises(EmbeddingError, match="Ollama API error: 500"):
                await client.embed("test")


class TestContextManager:
    """Tests for async context manager."""

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=EMBED_URL, json={"embeddings": [[0.1]]})

        client = OllamaClient()
        async with client:
            await client.embed("test")
            assert client._client is not None

        assert client._client is None
