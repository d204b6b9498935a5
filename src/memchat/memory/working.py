"""Query-time union of the semantic, episodic and long-term stores."""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from memchat.exceptions import StoreUnavailable
from memchat.memory.base import MemoryHit, MemoryOptions, MemoryStore, memory_kind
from memchat.memory.episodic import EpisodicMemory
from memchat.memory.index import resolve_dimensions
from memchat.memory.long_term import Extractor, LongTermMemory
from memchat.memory.semantic import SemanticMemory
from memchat.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_KINDS = ("semantic", "episodic", "long-term")


class WorkingMemory:
    """Fans a query out to every store and merges the hits by distance.

    One failing store fails the whole search, and the fan-out shares one
    deadline of ``search_timeout`` seconds.
    """

    def __init__(self, stores: Mapping[str, MemoryStore], search_timeout: float = 30.0) -> None:
        self._stores = dict(stores)
        self.search_timeout = search_timeout

    @classmethod
    async def create(
        cls,
        store: DocumentStore,
        user_id: str,
        options: MemoryOptions,
        *,
        thresholds: Mapping[str, float] | None = None,
        extractor: Extractor | None = None,
        search_timeout: float = 30.0,
        kinds: tuple[str, ...] = DEFAULT_KINDS,
    ) -> WorkingMemory:
        dims = await resolve_dimensions(options.embed, options.vector_dimensions)
        shared = options.copy(vector_dimensions=dims)
        thresholds = thresholds or {}
        stores: dict[str, MemoryStore] = {}
        for kind in kinds:
            store_cls = memory_kind(kind)
            stores[kind] = store_cls(
                store,
                shared.copy(distance_threshold=thresholds.get(kind, shared.distance_threshold)),
                user_id=user_id,
            )
        long_term = stores.get("long-term")
        if isinstance(long_term, LongTermMemory):
            long_term.extractor = extractor
        await asyncio.gather(*(s.initialize() for s in stores.values()))
        return cls(stores, search_timeout=search_timeout)

    @property
    def kinds(self) -> list[str]:
        return list(self._stores)

    def store_for(self, kind: str) -> MemoryStore:
        memory_kind(kind)
        try:
            return self._stores[kind]
        except KeyError:
            raise ValueError(f"Memory kind {kind} is not part of this working memory") from None

    @property
    def semantic(self) -> SemanticMemory:
        return self._stores["semantic"]

    @property
    def episodic(self) -> EpisodicMemory:
        return self._stores["episodic"]

    @property
    def long_term(self) -> LongTermMemory:
        return self._stores["long-term"]

    async def search(self, query: str, top_k: int | None = None) -> list[MemoryHit]:
        tasks = [
            asyncio.ensure_future(store.search(query, top_k=top_k))
            for store in self._stores.values()
        ]
        done, pending = await asyncio.wait(
            tasks, timeout=self.search_timeout, return_when=asyncio.FIRST_EXCEPTION
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        errors = [task.exception() for task in tasks if task in done and task.exception()]
        if errors:
            raise errors[0]
        if pending:
            raise StoreUnavailable(f"memory search timed out after {self.search_timeout}s")

        hits = [hit for task in tasks for hit in task.result()]
        hits.sort(key=lambda h: h.distance)
        if top_k is not None:
            hits = hits[:top_k]
        logger.debug("Working memory returned %d hits for %r", len(hits), query)
        return hits
