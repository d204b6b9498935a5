"""Shared machinery for the vector-indexed memory stores."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar

from memchat.embeddings.backends import EmbedFn
from memchat.exceptions import EmbeddingFailure
from memchat.memory.index import VectorIndexManager, index_name, key_prefix, resolve_dimensions
from memchat.storage.document_store import DocumentStore
from memchat.storage.schema import IndexSchema, KnnQuery, TagFilter
from memchat.utils import sortable_id

logger = logging.getLogger(__name__)


async def _missing_embed(text: str) -> list[float]:
    raise EmbeddingFailure("no embedding function configured")


@dataclass
class MemoryOptions:
    # <= 0 infers the dimension from a sentinel embedding
    vector_dimensions: int = -1
    create_uid: Callable[[], str] = sortable_id
    embed: EmbedFn = _missing_embed
    # None takes the store's own default
    distance_threshold: float | None = None
    top_k: int = 1

    def copy(self, **changes: Any) -> MemoryOptions:
        return replace(self, **changes)


def within_threshold(hits: list[dict[str, Any]], threshold: float) -> list[dict[str, Any]]:
    """Sort by distance and keep finite distances ``<= threshold``."""
    kept = []
    for hit in hits:
        try:
            distance = float(hit.get("distance"))
        except (TypeError, ValueError):
            continue
        if math.isfinite(distance) and distance <= threshold:
            kept.append({**hit, "distance": distance})
    kept.sort(key=lambda h: h["distance"])
    return kept


_MEMORY_KINDS: dict[str, type[MemoryStore]] = {}


def register_memory_kind(kind: str):
    """Class decorator registering a store under its kind tag."""

    def decorator(cls: type[MemoryStore]) -> type[MemoryStore]:
        cls.kind = kind
        _MEMORY_KINDS[kind] = cls
        return cls

    return decorator


def memory_kind(kind: str) -> type[MemoryStore]:
    try:
        return _MEMORY_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown memory kind: {kind}") from None


def memory_kinds() -> list[str]:
    return sorted(_MEMORY_KINDS)


class MemoryStore:
    """A namespace of JSON documents with one search index."""

    kind: ClassVar[str] = ""
    default_threshold: ClassVar[float] = 0.4
    # Kinds the model may write to through the memory tools
    writable: ClassVar[bool] = False

    def __init__(
        self,
        store: DocumentStore,
        options: MemoryOptions | None = None,
        *,
        user_id: str | None = None,
    ) -> None:
        self.store = store
        self.options = options or MemoryOptions()
        self.user_id = user_id
        self.indexes = VectorIndexManager(store)
        self._initialized = False

    @property
    def namespace(self) -> str:
        raise NotImplementedError

    def schema(self, dims: int) -> IndexSchema:
        raise NotImplementedError

    @property
    def index(self) -> str:
        return index_name(self.namespace)

    @property
    def threshold(self) -> float:
        if self.options.distance_threshold is None:
            return self.default_threshold
        return self.options.distance_threshold

    @property
    def dims(self) -> int:
        return self.options.vector_dimensions

    def key(self, entry_id: str) -> str:
        return f"{key_prefix(self.namespace)}{entry_id}"

    @classmethod
    async def create(
        cls,
        store: DocumentStore,
        options: MemoryOptions | None = None,
        *,
        user_id: str | None = None,
    ):
        memory = cls(store, options, user_id=user_id)
        await memory.initialize()
        return memory

    async def initialize(self) -> None:
        if self._initialized:
            return
        dims = await resolve_dimensions(self.embed, self.options.vector_dimensions)
        if dims != self.options.vector_dimensions:
            self.options = self.options.copy(vector_dimensions=dims)
        await self.indexes.ensure_index(self.namespace, self.schema(dims))
        self._initialized = True

    async def embed(self, text: str) -> list[float]:
        try:
            vec = await self.options.embed(text)
        except EmbeddingFailure:
            raise
        except Exception as exc:
            raise EmbeddingFailure(f"embedding failed: {exc}") from exc
        vec = [float(x) for x in vec]
        if self.dims > 0 and len(vec) != self.dims:
            raise EmbeddingFailure(f"embedding has {len(vec)} dimensions, expected {self.dims}")
        return vec

    async def write(self, entry_id: str, document: dict[str, Any], ttl: float | None = None) -> None:
        key = self.key(entry_id)
        await self.store.set(key, document)
        if ttl is not None and ttl > 0:
            await self.store.expire(key, ttl)

    async def knn(
        self,
        vector_field: str,
        vector: list[float],
        *,
        top_k: int | None = None,
        filters: list[TagFilter] | None = None,
        return_fields: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """KNN query followed by the threshold post-filter."""
        await self.initialize()
        results = await self.store.search(
            self.index,
            KnnQuery(
                field=vector_field,
                vector=vector,
                k=top_k or self.options.top_k,
                filters=filters or [],
                return_fields=return_fields,
            ),
        )
        hits = [{**doc.value, "_key": doc.key} for doc in results.documents]
        return within_threshold(hits, self.threshold)


@dataclass
class MemoryHit:
    """A search hit tagged with the store it came from."""

    type: str
    id: str
    distance: float
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def answer(self) -> str:
        """The text a memory search tool hands back for this hit."""
        for name in ("answer", "summary", "text"):
            value = self.fields.get(name)
            if value:
                return str(value)
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "distance": self.distance, **self.fields}
