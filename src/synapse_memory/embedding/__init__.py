"""Embedding provider for synapse."""

from synapse_memory.embedding.ollama import EMBED_PREFIX, EmbeddingError, OllamaClient

__all__ = ["OllamaClient", "EmbeddingError", "EMBED_PREFIX"]
