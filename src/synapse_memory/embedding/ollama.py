"""Ollama embedding provider for node content and retrieval queries.

The engine never computes embeddings itself; it consumes vectors from this
provider and treats every call as a fallible remote dependency:
- Connection and transport errors are retried with exponential backoff
- Timeouts, HTTP errors and malformed responses raise EmbeddingError
- Every vector returned by one client must have the same dimension, so
  similarity between stored nodes and queries stays meaningful
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, List, Optional, Protocol

import httpx

if TYPE_CHECKING:
    from synapse_memory.config import SynapseSettings

logger = logging.getLogger(__name__)

# Query prefix for mxbai-embed-large model
# Stored node content does NOT get this prefix, only retrieval queries
EMBED_PREFIX = "Represent this sentence for searching relevant passages: "


class EmbeddingError(Exception):
    """Raised when the embedding provider cannot produce a usable vector."""

    pass


class Embedder(Protocol):
    """What the engine needs from an embedding provider."""

    async def embed(self, text: str, is_query: bool = False) -> List[float]: ...

    async def embed_batch(self, texts: List[str], is_query: bool = False) -> List[List[float]]: ...


class OllamaClient:
    """Async HTTP client for the Ollama /api/embed endpoint.

    Args:
        host: Ollama server host URL (default: "http://localhost:11434")
        model: Embedding model name (default: "mxbai-embed-large")
        timeout: Request timeout in seconds (default: 30)
        max_retries: Attempts for connection/transport failures (default: 3)
        base_delay: First backoff delay in seconds, doubled per retry (default: 1.0)

    Example:
        >>> async with OllamaClient() as client:
        ...     query_vec = await client.embed("does she like chess?", is_query=True)
        ...     node_vecs = await client.embed_batch(["likes chess", "plays piano"])
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "mxbai-embed-large",
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.dimension: Optional[int] = None
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: "SynapseSettings") -> "OllamaClient":
        return cls(
            host=settings.ollama_host,
            model=settings.ollama_model,
            timeout=float(settings.ollama_timeout),
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _prepare(self, text: str, is_query: bool) -> str:
        if is_query and "mxbai" in self.model.lower():
            return f"{EMBED_PREFIX}{text}"
        return text

    async def _post_embed(self, inputs: str | List[str]) -> list[list[float]]:
        """POST to /api/embed, retrying transient transport failures.

        Raises:
            EmbeddingError: If the request fails after all retries or the
                response carries no embeddings
        """
        client = await self._get_client()
        payload: dict[str, Any] = {"model": self.model, "input": inputs}

        for attempt in range(self.max_retries):
            try:
                response = await client.post(f"{self.host}/api/embed", json=payload)
                response.raise_for_status()
                data: dict[str, Any] = response.json()
                break

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"Embedding request timed out after {self.timeout}s (model {self.model})"
                ) from e

            except httpx.HTTPStatusError as e:
                raise EmbeddingError(
                    f"Ollama API error: {e.response.status_code} - {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                # ConnectError is a RequestError; both are worth another try
                if attempt >= self.max_retries - 1:
                    raise EmbeddingError(
                        f"Embedding provider unreachable after {self.max_retries} attempts: {e}"
                    ) from e
                delay = self.base_delay * (2**attempt)
                logger.warning(
                    f"Embedding request failed (attempt {attempt + 1}/{self.max_retries}), "
                    f"retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)

            except ValueError as e:
                raise EmbeddingError(f"Ollama returned invalid JSON: {e}") from e
        else:
            raise EmbeddingError("Embedding provider gave no response")

        embeddings = data.get("embeddings")
        if not embeddings:
            raise EmbeddingError("No embedding returned from Ollama API")
        return [self._check_dimension(vector) for vector in embeddings]

    def _check_dimension(self, vector: Any) -> list[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingError("Ollama returned an empty or malformed vector")
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            raise EmbeddingError(
                f"Embedding dimension changed from {self.dimension} to {len(vector)}"
            )
        return [float(x) for x in vector]

    async def embed(self, text: str, is_query: bool = False) -> List[float]:
        """Embed one text.

        Args:
            text: Node content or query text
            is_query: Apply the mxbai retrieval prefix

        Raises:
            EmbeddingError: If embedding generation fails
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")
        vectors = await self._post_embed(self._prepare(text, is_query))
        return vectors[0]

    async def embed_batch(
        self,
        texts: List[str],
        is_query: bool = False,
        batch_size: int = 32,
    ) -> List[List[float]]:
        """Embed many texts, batch_size inputs per request.

        Raises:
            EmbeddingError: If any batch fails or returns the wrong count
            ValueError: If texts is empty
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        vectors: List[List[float]] = []
        for start in range(0, len(texts), batch_size):
            batch = [self._prepare(text, is_query) for text in texts[start : start + batch_size]]
            embedded = await self._post_embed(batch)
            if len(embedded) != len(batch):
                raise EmbeddingError(f"Expected {len(batch)} embeddings, got {len(embedded)}")
            vectors.extend(embedded)
        return vectors
