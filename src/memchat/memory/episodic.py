"""Per-user summaries of past chats, one entry per chat."""

from __future__ import annotations

import logging

from memchat.memory.base import MemoryHit, MemoryStore, register_memory_kind
from memchat.storage.schema import FLAT, L2, IndexSchema, TagField, TagFilter, TagQuery, TextField, VectorField

logger = logging.getLogger(__name__)


@register_memory_kind("episodic")
class EpisodicMemory(MemoryStore):
    default_threshold = 0.4

    @property
    def namespace(self) -> str:
        if not self.user_id:
            raise ValueError("episodic memory is scoped to a user")
        return f"users:u{self.user_id}:memory:episodic"

    def schema(self, dims: int) -> IndexSchema:
        return IndexSchema(
            fields=(
                VectorField("embedding", dims, algorithm=FLAT, metric=L2),
                TagField("id"),
                TextField("summary"),
                TagField("chatId"),
            )
        )

    async def search(self, query: str, top_k: int | None = None) -> list[MemoryHit]:
        vector = await self.embed(query)
        hits = await self.knn(
            "embedding", vector, top_k=top_k, return_fields=["id", "summary", "chatId"]
        )
        return [
            MemoryHit(
                type=self.kind,
                id=str(h.get("id", "")),
                distance=h["distance"],
                fields={"summary": h.get("summary", ""), "chatId": h.get("chatId", "")},
            )
            for h in hits
        ]

    async def add(self, chat_id: str, summary: str, ttl: float | None = None) -> str:
        await self.initialize()
        vector = await self.embed(summary)
        entry_id = self.options.create_uid()
        await self.write(
            entry_id,
            {"id": entry_id, "summary": summary, "chatId": chat_id, "embedding": vector},
            ttl,
        )
        return entry_id

    async def update(self, chat_id: str, summary: str, ttl: float | None = None) -> str:
        """Overwrite the chat's summary, inserting it when the chat has none yet."""
        entry_id = await self.find_by_chat(chat_id)
        if entry_id is None:
            return await self.add(chat_id, summary, ttl)
        vector = await self.embed(summary)
        await self.write(
            entry_id,
            {"id": entry_id, "summary": summary, "chatId": chat_id, "embedding": vector},
            ttl,
        )
        logger.debug("Updated episodic memory for chat %s", chat_id)
        return entry_id

    async def find_by_chat(self, chat_id: str) -> str | None:
        await self.initialize()
        results = await self.store.search(
            self.index,
            TagQuery(filters=[TagFilter.of("chatId", chat_id)], limit=1, return_fields=["id"]),
        )
        if results.total == 0:
            return None
        return results.documents[0].key.removeprefix(self.key(""))
