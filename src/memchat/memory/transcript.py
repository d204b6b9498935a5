"""Per-chat message log kept as one growing array in a single document."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from memchat.exceptions import NotFound
from memchat.memory.index import VectorIndexManager, index_name
from memchat.storage.document_store import DocumentStore
from memchat.storage.schema import IndexSchema, NumericField, TagField, TagFilter, TagQuery, TextField
from memchat.utils import now_ms, sortable_id

logger = logging.getLogger(__name__)

CHAT_SCHEMA = IndexSchema(
    fields=(
        TagField("userId"),
        TagField("chatId"),
        TextField("summary"),
        NumericField("lastSummarizedAt"),
    )
)


@dataclass
class ChatMessage:
    id: str
    role: str  # user or assistant
    content: str
    created_at: int = field(default_factory=now_ms)
    extracted: str = "f"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
            "extracted": self.extracted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            id=str(data.get("id", "")),
            role=str(data.get("role", "user")),
            content=str(data.get("content", "")),
            created_at=int(data.get("createdAt") or 0),
            extracted=str(data.get("extracted", "f")),
        )


@dataclass
class ChatListing:
    chat_id: str
    summary: str = ""
    last_summarized_at: int = 0
    last_message: ChatMessage | None = None


def chats_namespace(user_id: str) -> str:
    return f"users:u{user_id}:memory:conversations"


class ChatTranscript:
    def __init__(self, store: DocumentStore, user_id: str, chat_id: str) -> None:
        self.store = store
        self.user_id = user_id
        self.chat_id = chat_id

    @property
    def key(self) -> str:
        return f"{chats_namespace(self.user_id)}:c{self.chat_id}"

    @classmethod
    async def open(cls, store: DocumentStore, user_id: str, chat_id: str | None = None) -> ChatTranscript:
        """Open a chat, creating its document on first access."""
        await VectorIndexManager(store).ensure_index(chats_namespace(user_id), CHAT_SCHEMA)
        transcript = cls(store, user_id, chat_id or sortable_id())
        created = await store.set_if_absent(
            transcript.key,
            {
                "userId": user_id,
                "chatId": transcript.chat_id,
                "summary": "",
                "lastSummarizedAt": 0,
                "messages": [],
            },
        )
        if created:
            logger.debug("Created chat %s for user %s", transcript.chat_id, user_id)
        return transcript

    @classmethod
    async def exists(cls, store: DocumentStore, user_id: str, chat_id: str) -> bool:
        return await store.exists(cls(store, user_id, chat_id).key)

    async def push(self, role: str, content: str) -> ChatMessage:
        message = ChatMessage(id=sortable_id(), role=role, content=content)
        await self.store.append(self.key, "$.messages", message.to_dict())
        return message

    async def messages(self) -> list[ChatMessage]:
        raw = await self.store.get(self.key, "$.messages")
        return [ChatMessage.from_dict(m) for m in raw or []]

    async def length(self) -> int:
        return await self.store.array_length(self.key, "$.messages") or 0

    async def top(self) -> ChatMessage | None:
        raw = await self.store.array_get(self.key, "$.messages", -1)
        return ChatMessage.from_dict(raw) if raw else None

    async def _position(self, message_id: str) -> int:
        for i, message in enumerate(await self.messages()):
            if message.id == message_id:
                return i
        raise NotFound(f"message {message_id} not in chat {self.chat_id}")

    async def replace(self, message_id: str, content: str) -> ChatMessage:
        """Replace one message's content in place, keeping its position and id."""
        position = await self._position(message_id)
        raw = await self.store.array_get(self.key, "$.messages", position)
        message = ChatMessage.from_dict(raw)
        message.content = content
        message.created_at = now_ms()
        await self.store.array_set(self.key, "$.messages", position, message.to_dict())
        return message

    async def mark_extracted(self, message_ids: list[str]) -> None:
        wanted = set(message_ids)
        for i, message in enumerate(await self.messages()):
            if message.id in wanted and message.extracted != "t":
                await self.store.set_path(self.key, f"$.messages[{i}].extracted", "t")

    async def summary(self) -> str:
        return await self.store.get(self.key, "$.summary") or ""

    async def last_summarized_at(self) -> int:
        return int(await self.store.get(self.key, "$.lastSummarizedAt") or 0)

    async def unsummarized(self) -> list[ChatMessage]:
        since = await self.last_summarized_at()
        return [m for m in await self.messages() if m.created_at > since]

    async def update_summary(self, text: str) -> None:
        await self.store.merge(self.key, {"summary": text, "lastSummarizedAt": now_ms()})

    async def clear(self) -> None:
        """Empty the message array and reset the summary; the document stays."""
        await self.store.array_clear(self.key, "$.messages")
        await self.store.merge(self.key, {"summary": "", "lastSummarizedAt": now_ms()})

    @classmethod
    async def all_chats(cls, store: DocumentStore, user_id: str) -> list[ChatListing]:
        """Chats found through the metadata index, each with only its last message."""
        namespace = chats_namespace(user_id)
        await VectorIndexManager(store).ensure_index(namespace, CHAT_SCHEMA)
        results = await store.search(
            index_name(namespace),
            TagQuery(
                filters=[TagFilter.of("userId", user_id)],
                return_fields=["chatId", "summary", "lastSummarizedAt"],
            ),
        )
        listings = []
        for doc in results.documents:
            chat_id = str(doc.value.get("chatId", ""))
            listings.append(
                ChatListing(
                    chat_id=chat_id,
                    summary=str(doc.value.get("summary", "")),
                    last_summarized_at=int(doc.value.get("lastSummarizedAt") or 0),
                    last_message=await cls(store, user_id, chat_id).top(),
                )
            )
        return listings
