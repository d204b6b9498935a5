"""Embedding providers and abstractions."""

from memchat.embeddings.backends import (
    EmbedFn,
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    create_embedder,
    embed_function,
)

__all__ = [
    "EmbedFn",
    "EmbeddingBackend",
    "OpenAIEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "create_embedder",
    "embed_function",
]
