"""User-scoped long-term memory with topic/entity tagging and hash dedup.

Entries carry two embeddings: one of the question that should retrieve the
memory and one of the memory text itself. Searches try the question vector
first and fall back to the text vector when nothing passes the threshold.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Awaitable, Callable, Literal, Sequence

import orjson
from pydantic import BaseModel, ConfigDict, Field

from memchat.exceptions import NotFound
from memchat.llm.generate import ChatBackend, generate_text
from memchat.llm.tools import BoundTool, Tool
from memchat.llm.types import Message
from memchat.memory.base import MemoryHit, MemoryStore, register_memory_kind
from memchat.memory.transcript import ChatMessage
from memchat.storage.schema import (
    COSINE,
    HNSW,
    IndexSchema,
    NumericField,
    TagField,
    TagFilter,
    TagQuery,
    TextField,
    VectorField,
)
from memchat.utils import content_hash, now_ms, parse_iso

logger = logging.getLogger(__name__)

# Cosine distances of identical vectors come back as float noise around 0
EXACT_MATCH_EPSILON = 1e-6

EXTRACTION_PROMPT = """\
You extract long-term memories from a conversation message. Call the
`extract_memories` tool with every piece of information worth remembering
in future conversations, or with an empty list if there is none.

Ground every memory so it reads correctly without the conversation:
replace pronouns with who they refer to ("User prefers Python"), turn
relative dates into absolute ones (today is {today}), and name places and
things explicitly.

Memory types:
- semantic: timeless facts, preferences, skills and general knowledge
  ("User is a data scientist", "The API rate limit is 1000 requests/hour").
- episodic: events tied to a time ("User reported a login bug on
  2024-01-15"). Give the eventDate in ISO 8601.

Set requiresUserId when the memory is about this particular user.
Do not extract procedural instructions.
"""


class ExtractedMemory(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["semantic", "episodic"] = Field(description="The memory type")
    requires_user_id: bool = Field(
        alias="requiresUserId",
        description="True when the memory is about this specific user",
    )
    question: str = Field(
        min_length=1,
        description="A question that should later retrieve this memory, e.g. \"What is the user's name?\"",
    )
    text: str = Field(min_length=1, description="The information to store, with references grounded")
    topics: list[str] = Field(default_factory=list, description="Up to five topics")
    entities: list[str] = Field(default_factory=list, description="Entities mentioned")
    event_date: str | None = Field(
        default=None,
        alias="eventDate",
        description="For episodic memories, when the event happened (ISO 8601); null otherwise",
    )


class ExtractedMemories(BaseModel):
    memories: list[ExtractedMemory] = Field(default_factory=list)


class MemorySearch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1, description="The search query, may be phrased as a question")
    type: Literal["semantic", "episodic"] = Field(description="The memory type to search")
    requires_user_id: bool = Field(
        default=False,
        alias="requiresUserId",
        description="For semantic memories, true to search only this user's memories",
    )


Extractor = Callable[[str, ChatMessage, Sequence[BoundTool]], Awaitable[Any]]


def memory_hash(
    memory_type: str,
    text: str,
    user_id: str | None = None,
    session_id: str | None = None,
) -> str:
    """sha256 over the compact JSON of the identifying fields, absent ids omitted."""
    payload: dict[str, Any] = {"memoryType": memory_type}
    if session_id is not None:
        payload["sessionId"] = session_id
    payload["text"] = text
    if user_id is not None:
        payload["userId"] = user_id
    return content_hash(orjson.dumps(payload))


def _event_ms(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(parse_iso(value).timestamp() * 1000)
    except ValueError:
        logger.debug("Ignoring unparseable event date %r", value)
        return None


class _Collector:
    def __init__(self) -> None:
        self.memories: list[ExtractedMemory] = []


async def _collect(collector: _Collector, args: ExtractedMemories) -> str:
    collector.memories.extend(args.memories)
    return f"Recorded {len(args.memories)} memories"


EXTRACT_MEMORIES_TOOL = Tool(
    name="extract_memories",
    description="Record the memories extracted from the message.",
    input_model=ExtractedMemories,
    handler=_collect,
)


def llm_extractor(backend: ChatBackend, max_steps: int = 2) -> Extractor:
    """Run the extraction prompt for one message through a chat backend."""

    async def extract(system_prompt: str, message: ChatMessage, tools: Sequence[BoundTool]) -> Any:
        return await generate_text(
            backend,
            [Message.system(system_prompt), Message.user(f"{message.role}: {message.content}")],
            tools,
            max_steps=max_steps,
        )

    return extract


_RETURN_FIELDS = [
    "id",
    "userId",
    "sessionId",
    "memoryType",
    "topics",
    "entities",
    "memoryHash",
    "accessCount",
    "createdAt",
    "lastAccessed",
    "updatedAt",
    "eventDate",
    "question",
    "text",
]


@register_memory_kind("long-term")
class LongTermMemory(MemoryStore):
    default_threshold = 0.12
    writable = True

    def __init__(self, store, options=None, *, user_id=None, extractor: Extractor | None = None) -> None:
        super().__init__(store, options, user_id=user_id)
        self.extractor = extractor

    @property
    def namespace(self) -> str:
        return "memory:longterm"

    def schema(self, dims: int) -> IndexSchema:
        return IndexSchema(
            fields=(
                VectorField("questionEmbedding", dims, algorithm=HNSW, metric=COSINE),
                VectorField("textEmbedding", dims, algorithm=HNSW, metric=COSINE),
                TagField("id"),
                TagField("sessionId"),
                TagField("userId"),
                TagField("memoryType"),
                TagField("topics"),
                TagField("entities"),
                TagField("memoryHash"),
                NumericField("accessCount"),
                NumericField("createdAt"),
                NumericField("lastAccessed"),
                NumericField("updatedAt"),
                NumericField("eventDate"),
                TextField("question"),
                TextField("text"),
            )
        )

    # --- Search ---

    async def search_memories(self, search: MemorySearch, top_k: int | None = None) -> list[MemoryHit]:
        """Question-vector KNN, retried on the text vector when nothing qualifies.

        Only semantic searches that require a user id are restricted to this
        user's entries.
        """
        filters = []
        if search.type == "semantic" and search.requires_user_id:
            filters.append(TagFilter.of("userId", self._require_user()))
        return await self._search(search.query, filters, top_k)

    async def _search(self, query: str, filters: list[TagFilter], top_k: int | None) -> list[MemoryHit]:
        vector = await self.embed(query)
        hits = await self.knn(
            "questionEmbedding", vector, top_k=top_k, filters=filters, return_fields=_RETURN_FIELDS
        )
        if not hits:
            hits = await self.knn(
                "textEmbedding", vector, top_k=top_k, filters=filters, return_fields=_RETURN_FIELDS
            )
        logger.info("Found %d long-term memories for user %s", len(hits), self.user_id)
        for hit in hits:
            await self._touch(hit["_key"])
        return [self._hit(h) for h in hits]

    async def _touch(self, key: str) -> None:
        try:
            await self.store.increment(key, "$.accessCount", 1)
            await self.store.set_path(key, "$.lastAccessed", now_ms())
        except NotFound:
            # expired between search and touch
            pass

    def _hit(self, raw: dict[str, Any]) -> MemoryHit:
        fields = {k: v for k, v in raw.items() if k not in ("id", "distance", "_key")}
        return MemoryHit(type=self.kind, id=str(raw.get("id", "")), distance=raw["distance"], fields=fields)

    def _require_user(self) -> str:
        if not self.user_id:
            raise ValueError("long-term memory needs a user id for user-scoped access")
        return self.user_id

    # --- Extraction ---

    async def extract(self, messages: Sequence[ChatMessage], session_id: str) -> list[dict[str, Any]]:
        """Extract memories from not-yet-extracted messages and store them.

        Returns the stored entries without their embeddings.
        """
        if self.extractor is None:
            raise RuntimeError("long-term memory has no extractor configured")
        pending = [m for m in messages if m.extracted != "t"]
        if not pending:
            return []
        collector = _Collector()
        tool = EXTRACT_MEMORIES_TOOL.bind(collector)
        prompt = EXTRACTION_PROMPT.format(today=date.today().isoformat())
        for message in pending:
            await self.extractor(prompt, message, [tool])
        if not collector.memories:
            return []
        logger.info("Extracted %d long-term memories for user %s", len(collector.memories), self.user_id)
        return await self.remember(collector.memories, session_id)

    async def remember(self, memories: Sequence[ExtractedMemory], session_id: str | None = None) -> list[dict[str, Any]]:
        """Embed and bulk-write memories, upserting by content hash."""
        await self.initialize()
        now = now_ms()
        by_hash: dict[str, dict[str, Any]] = {}
        for memory in memories:
            user_id = self._require_user() if memory.requires_user_id else None
            sess_id = session_id if memory.requires_user_id else None
            entry = self._entry(
                memory_type=memory.type,
                question=memory.question,
                text=memory.text,
                user_id=user_id,
                session_id=sess_id,
                topics=memory.topics,
                entities=memory.entities,
                event_date=_event_ms(memory.event_date),
                now=now,
            )
            by_hash[entry["memoryHash"]] = entry

        entries = list(by_hash.values())
        for entry in entries:
            existing = await self.find_by_hash(entry["memoryHash"])
            if existing is not None:
                entry["id"] = existing["id"]
                entry["createdAt"] = existing.get("createdAt", now)
                entry["accessCount"] = existing.get("accessCount", 0)
            entry["questionEmbedding"] = await self.embed(entry["question"])
            entry["textEmbedding"] = await self.embed(entry["text"])

        await self.store.mset((self.key(e["id"]), e) for e in entries)
        return [self._public(e) for e in entries]

    async def find_by_hash(self, digest: str) -> dict[str, Any] | None:
        await self.initialize()
        results = await self.store.search(
            self.index,
            TagQuery(filters=[TagFilter.of("memoryHash", digest)], limit=1, return_fields=["id", "createdAt", "accessCount"]),
        )
        if results.total == 0:
            return None
        return results.documents[0].value

    def _entry(
        self,
        *,
        memory_type: str,
        question: str,
        text: str,
        user_id: str | None,
        session_id: str | None,
        topics: list[str],
        entities: list[str],
        event_date: int | None,
        now: int,
        entry_id: str | None = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "id": entry_id or self.options.create_uid(),
            "memoryType": memory_type,
            "topics": list(topics),
            "entities": list(entities),
            "memoryHash": memory_hash(memory_type, text, user_id, session_id),
            "accessCount": 0,
            "createdAt": now,
            "updatedAt": now,
            "eventDate": event_date,
            "question": question,
            "text": text,
        }
        if user_id is not None:
            entry["userId"] = user_id
        if session_id is not None:
            entry["sessionId"] = session_id
        return entry

    @staticmethod
    def _public(entry: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in entry.items() if not k.endswith("Embedding")}

    # --- Q/A surface used by working memory and the memory tools ---

    async def search(self, query: str, top_k: int | None = None) -> list[MemoryHit]:
        """This user's entries plus entries that belong to no user."""
        user_filter = TagFilter.of("userId", self._require_user(), include_missing=True)
        return await self._search(query, [user_filter], top_k)

    async def add(self, question: str, answer: str, ttl: float | None = None) -> str:
        """Store a user-scoped semantic memory. An identical question updates instead."""
        user_id = self._require_user()
        vector = await self.embed(question)
        existing = await self.knn(
            "questionEmbedding",
            vector,
            top_k=1,
            filters=[TagFilter.of("userId", user_id)],
            return_fields=["id"],
        )
        if existing and existing[0]["distance"] <= EXACT_MATCH_EPSILON:
            return await self.update(existing[0]["id"], question, answer, ttl)

        entry = self._entry(
            memory_type="semantic",
            question=question,
            text=answer,
            user_id=user_id,
            session_id=None,
            topics=[],
            entities=[],
            event_date=None,
            now=now_ms(),
        )
        prior = await self.find_by_hash(entry["memoryHash"])
        if prior is not None:
            entry["id"] = prior["id"]
            entry["createdAt"] = prior.get("createdAt", entry["createdAt"])
            entry["accessCount"] = prior.get("accessCount", 0)
        entry["questionEmbedding"] = vector
        entry["textEmbedding"] = await self.embed(answer)
        await self.write(entry["id"], entry, ttl)
        return entry["id"]

    async def update(self, entry_id: str, question: str, answer: str, ttl: float | None = None) -> str:
        """Rewrite one of this user's entries. Shared entries are read-only here."""
        owner = self._require_user()
        await self.initialize()
        current = await self.store.get(self.key(entry_id))
        if current is None or current.get("userId") != owner:
            raise NotFound(f"Long-term memory entry {entry_id} does not exist")
        user_id = current.get("userId")
        session_id = current.get("sessionId")
        memory_type = current.get("memoryType", "semantic")
        entry = {
            **current,
            "question": question,
            "text": answer,
            "memoryHash": memory_hash(memory_type, answer, user_id, session_id),
            "updatedAt": now_ms(),
            "questionEmbedding": await self.embed(question),
            "textEmbedding": await self.embed(answer),
        }
        await self.write(entry_id, entry, ttl)
        return entry_id
