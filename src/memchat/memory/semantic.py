"""Global question/answer memory shared by every user."""

from __future__ import annotations

import logging

from memchat.exceptions import NotFound
from memchat.memory.base import MemoryHit, MemoryStore, register_memory_kind
from memchat.storage.schema import FLAT, L2, IndexSchema, TagField, TextField, VectorField

logger = logging.getLogger(__name__)


@register_memory_kind("semantic")
class SemanticMemory(MemoryStore):
    default_threshold = 0.4
    writable = True

    @property
    def namespace(self) -> str:
        return "semantic-memory"

    def schema(self, dims: int) -> IndexSchema:
        return IndexSchema(
            fields=(
                VectorField("embedding", dims, algorithm=FLAT, metric=L2),
                TagField("id"),
                TextField("question"),
                TextField("answer"),
            )
        )

    async def search(self, query: str, top_k: int | None = None) -> list[MemoryHit]:
        vector = await self.embed(query)
        hits = await self.knn(
            "embedding", vector, top_k=top_k, return_fields=["id", "question", "answer"]
        )
        return [
            MemoryHit(
                type=self.kind,
                id=str(h.get("id", "")),
                distance=h["distance"],
                fields={"question": h.get("question", ""), "answer": h.get("answer", "")},
            )
            for h in hits
        ]

    async def add(self, question: str, answer: str, ttl: float | None = None) -> str:
        """Store a Q/A pair. Re-adding an identical question updates it instead."""
        existing = await self.search(question, top_k=1)
        if existing and existing[0].distance == 0:
            return await self.update(existing[0].id, question, answer, ttl)
        await self.initialize()
        vector = await self.embed(question)
        entry_id = self.options.create_uid()
        await self.write(
            entry_id,
            {"id": entry_id, "question": question, "answer": answer, "embedding": vector},
            ttl,
        )
        logger.debug("Added semantic memory %s", entry_id)
        return entry_id

    async def update(self, entry_id: str, question: str, answer: str, ttl: float | None = None) -> str:
        await self.initialize()
        vector = await self.embed(question)
        if not await self.store.exists(self.key(entry_id)):
            raise NotFound(f"Semantic memory entry {entry_id} does not exist")
        await self.write(
            entry_id,
            {"id": entry_id, "question": question, "answer": answer, "embedding": vector},
            ttl,
        )
        return entry_id

    async def get(self, entry_id: str) -> dict | None:
        doc = await self.store.get(self.key(entry_id))
        if doc is None:
            return None
        doc.pop("embedding", None)
        return doc
