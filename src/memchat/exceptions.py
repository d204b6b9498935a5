"""memchat exception hierarchy."""

from __future__ import annotations


class MemchatError(Exception):
    """Base class for all memchat errors."""


class StorageError(MemchatError):
    """Document store failure."""


class StoreUnavailable(StorageError):
    """The backing store could not be reached within the retry budget."""


class IndexAlreadyExists(StorageError):
    """An index with this name already exists. Callers treat it as success."""


class IndexNotFound(StorageError):
    """Search or drop against an index that was never created."""


class DimensionMismatch(StorageError):
    """An existing index disagrees with the requested vector dimension."""


class NotFound(MemchatError):
    """Update addressed a memory entry that does not exist."""


class EmbeddingFailure(MemchatError):
    """The embedding provider failed to produce a vector."""


class LLMFailure(MemchatError):
    """The chat-completion provider failed to produce a response."""


class ToolError(MemchatError):
    """A tool call could not be carried out; reported back to the model."""
