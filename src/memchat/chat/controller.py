"""Per-message orchestration of transcript, working memory and the LLM.

Every operation returns plain data. Callers that render incrementally pass
``send``, which receives event dicts:

- ``{"type": "message", "chatId", "message", "replaceId"?}``
- ``{"type": "chats", "chats", "currentChatId"}``
- ``{"type": "clear", "placeholder"}``
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from memchat.chat import prompts
from memchat.config import ChatConfig, MemoryConfig
from memchat.embeddings.backends import EmbedFn
from memchat.exceptions import LLMFailure, NotFound
from memchat.llm.generate import ChatBackend, generate_text
from memchat.llm.types import Message, ToolCall
from memchat.memory.base import MemoryHit, MemoryOptions
from memchat.memory.index import VectorIndexManager, key_prefix, resolve_dimensions
from memchat.memory.long_term import llm_extractor
from memchat.memory.tools import memory_tools
from memchat.memory.transcript import ChatMessage, ChatTranscript, chats_namespace
from memchat.memory.working import WorkingMemory
from memchat.storage.document_store import DocumentStore
from memchat.utils import sortable_id

logger = logging.getLogger(__name__)

Send = Callable[[dict[str, Any]], Any]

# Hits from these stores are answers; episodic hits are context only
CACHE_KINDS = ("semantic", "long-term")


@dataclass
class Answer:
    text: str
    cached: bool = False
    source: MemoryHit | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class Reply:
    chat_id: str
    user_message: ChatMessage
    answer: ChatMessage | None = None
    cached: bool = False
    error: str | None = None
    memory_errors: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ChatPreview:
    chat_id: str
    preview: str


@dataclass
class ChatView:
    chat_id: str
    chats: list[ChatPreview]
    messages: list[ChatMessage]


async def _emit(send: Send | None, event: dict[str, Any]) -> None:
    if send is None:
        return
    result = send(event)
    if inspect.isawaitable(result):
        await result


def _message_event(chat_id: str, message: dict[str, Any], replace_id: str | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "message", "chatId": chat_id, "message": message}
    if replace_id:
        event["replaceId"] = replace_id
    return event


class ChatController:
    def __init__(
        self,
        store: DocumentStore,
        embed: EmbedFn,
        backend: ChatBackend,
        memory_config: MemoryConfig | None = None,
        chat_config: ChatConfig | None = None,
        *,
        vector_dimensions: int = -1,
    ) -> None:
        self.store = store
        self.embed = embed
        self.backend = backend
        self.memory_config = memory_config or MemoryConfig()
        self.chat_config = chat_config or ChatConfig()
        self.vector_dimensions = vector_dimensions
        self._memories: dict[str, WorkingMemory] = {}

    # --- Wiring ---

    async def working_memory(self, user_id: str) -> WorkingMemory:
        memory = self._memories.get(user_id)
        if memory is None:
            if self.vector_dimensions <= 0:
                self.vector_dimensions = await resolve_dimensions(self.embed, self.vector_dimensions)
            cfg = self.memory_config
            memory = await WorkingMemory.create(
                self.store,
                user_id,
                MemoryOptions(
                    vector_dimensions=self.vector_dimensions,
                    embed=self.embed,
                    top_k=cfg.top_k,
                ),
                thresholds={
                    "semantic": cfg.semantic_threshold,
                    "episodic": cfg.episodic_threshold,
                    "long-term": cfg.long_term_threshold,
                },
                extractor=llm_extractor(self.backend),
                search_timeout=cfg.search_timeout,
            )
            self._memories[user_id] = memory
        return memory

    # --- Messages ---

    async def process_message(
        self,
        user_id: str,
        text: str,
        chat_id: str | None = None,
        send: Send | None = None,
    ) -> Reply:
        """Store the user's message, answer it, then update memory.

        The user's message is persisted before anything else. A failure
        while answering replaces the pending placeholder with an error
        message; memory updates after the answer never fail the reply.
        """
        transcript = await ChatTranscript.open(self.store, user_id, chat_id)
        user_message = await transcript.push("user", text)
        logger.info("Message added for user %s in chat %s", user_id, transcript.chat_id)
        await _emit(send, _message_event(transcript.chat_id, user_message.to_dict()))

        pending_id = f"pending-{sortable_id()}"
        pending = {"id": pending_id, "role": "assistant", "content": prompts.PENDING_CONTENT}
        await _emit(send, _message_event(transcript.chat_id, pending))

        try:
            answer = await self._answer(user_id, transcript)
            bot_message = await transcript.push("assistant", answer.text)
        except Exception as exc:
            logger.exception("Failed to answer message for user %s", user_id)
            error = {**pending, "content": prompts.ERROR_MESSAGE}
            await _emit(send, _message_event(transcript.chat_id, error, replace_id=pending_id))
            return Reply(chat_id=transcript.chat_id, user_message=user_message, error=str(exc))

        await _emit(send, _message_event(transcript.chat_id, bot_message.to_dict(), replace_id=pending_id))
        memory_errors = await self._after_answer(user_id, transcript, [user_message, bot_message])
        return Reply(
            chat_id=transcript.chat_id,
            user_message=user_message,
            answer=bot_message,
            cached=answer.cached,
            memory_errors=memory_errors,
            tool_calls=answer.tool_calls,
        )

    async def ask(self, user_id: str, chat_id: str) -> Answer:
        """Answer the chat's latest message from memory or the LLM."""
        transcript = await ChatTranscript.open(self.store, user_id, chat_id)
        return await self._answer(user_id, transcript)

    async def _answer(self, user_id: str, transcript: ChatTranscript) -> Answer:
        messages = await transcript.messages()
        if not messages:
            raise ValueError(f"chat {transcript.chat_id} has no messages to answer")
        question = messages[-1].content
        memory = await self.working_memory(user_id)

        hits = await memory.search(question)
        cached = next((h for h in hits if h.type in CACHE_KINDS and h.answer), None)
        if cached is not None:
            logger.info("Answered from %s memory for user %s", cached.type, user_id)
            return Answer(text=cached.answer, cached=True, source=cached)
        logger.info("No memory hit for user %s, asking the LLM", user_id)

        context = [h for h in hits if h.type == "episodic"]
        return await self._generate(memory, transcript, messages, context)

    async def _generate(
        self,
        memory: WorkingMemory,
        transcript: ChatTranscript,
        messages: list[ChatMessage],
        context: list[MemoryHit],
    ) -> Answer:
        summary = await transcript.summary()
        if summary:
            since = await transcript.last_summarized_at()
            recent = [m for m in messages if m.created_at > since]
            messages = recent or messages[-1:]
        history = [Message.system(prompts.answer_system_prompt(summary, context))]
        history.extend(Message(role=m.role, content=m.content) for m in messages)
        result = await generate_text(
            self.backend, history, memory_tools(memory), max_steps=self.chat_config.max_steps
        )
        if not result.text.strip():
            raise LLMFailure("the model returned no answer")
        return Answer(text=result.text, tool_calls=result.tool_calls)

    async def _after_answer(
        self,
        user_id: str,
        transcript: ChatTranscript,
        new_messages: list[ChatMessage],
    ) -> list[str]:
        errors: list[str] = []
        if self.memory_config.extract_long_term:
            try:
                memory = await self.working_memory(user_id)
                await memory.long_term.extract(new_messages, transcript.chat_id)
                await transcript.mark_extracted([m.id for m in new_messages])
            except Exception as exc:
                logger.exception("Long-term extraction failed for user %s", user_id)
                errors.append(f"extraction: {exc}")
        try:
            await self.summarize_chat(user_id, transcript.chat_id)
        except Exception as exc:
            logger.exception("Summarizing chat %s failed", transcript.chat_id)
            errors.append(f"summary: {exc}")
        return errors

    async def regenerate(
        self,
        user_id: str,
        chat_id: str,
        message_id: str,
        send: Send | None = None,
    ) -> ChatMessage:
        """Ask the LLM again for an assistant message and replace it in place."""
        transcript = await ChatTranscript.open(self.store, user_id, chat_id)
        messages = await transcript.messages()
        position = next((i for i, m in enumerate(messages) if m.id == message_id), None)
        if position is None or messages[position].role != "assistant":
            raise NotFound(f"assistant message {message_id} not in chat {chat_id}")
        before = messages[:position]
        if not before:
            raise ValueError(f"message {message_id} has nothing to answer")
        memory = await self.working_memory(user_id)
        hits = await memory.search(before[-1].content)
        context = [h for h in hits if h.type == "episodic"]
        answer = await self._generate(memory, transcript, before, context)
        message = await transcript.replace(message_id, answer.text)
        await _emit(send, _message_event(chat_id, message.to_dict(), replace_id=message_id))
        return message

    async def summarize_chat(self, user_id: str, chat_id: str) -> str | None:
        """Fold unsummarized messages into the chat summary once enough have piled up.

        The new summary also becomes the chat's episodic memory.
        """
        transcript = await ChatTranscript.open(self.store, user_id, chat_id)
        pending = await transcript.unsummarized()
        if len(pending) < self.memory_config.summarize_after:
            return None
        logger.info("Summarizing chat %s for user %s", chat_id, user_id)
        previous = await transcript.summary()
        result = await generate_text(
            self.backend,
            [Message.system(prompts.SUMMARY_PROMPT), Message.user(prompts.summary_request(previous, pending))],
            max_steps=1,
        )
        summary = result.text.strip()
        if not summary:
            return None
        await transcript.update_summary(summary)
        memory = await self.working_memory(user_id)
        await memory.episodic.update(chat_id, summary)
        return summary

    # --- Chats ---

    async def list_chats(self, user_id: str) -> list[ChatPreview]:
        chats = await ChatTranscript.all_chats(self.store, user_id)
        return [
            ChatPreview(
                chat_id=c.chat_id,
                preview=c.last_message.content if c.last_message else "New chat",
            )
            for c in chats
        ]

    async def _send_chats(self, send: Send | None, user_id: str, current: str) -> list[ChatPreview]:
        chats = await self.list_chats(user_id)
        await _emit(
            send,
            {
                "type": "chats",
                "chats": [{"chatId": c.chat_id, "preview": c.preview} for c in chats],
                "currentChatId": current,
            },
        )
        return chats

    async def new_chat(self, user_id: str, send: Send | None = None) -> str:
        transcript = await ChatTranscript.open(self.store, user_id)
        logger.info("Created chat %s for user %s", transcript.chat_id, user_id)
        await self._send_chats(send, user_id, transcript.chat_id)
        await _emit(send, {"type": "clear", "placeholder": True})
        return transcript.chat_id

    async def switch_chat(self, user_id: str, chat_id: str, send: Send | None = None) -> ChatView:
        chats = await self._send_chats(send, user_id, chat_id)
        transcript = await ChatTranscript.open(self.store, user_id, chat_id)
        messages = await transcript.messages()
        await _emit(send, {"type": "clear", "placeholder": not messages})
        for message in messages:
            await _emit(send, _message_event(chat_id, message.to_dict()))
        return ChatView(chat_id=chat_id, chats=chats, messages=messages)

    async def clear_chat(self, user_id: str, chat_id: str, send: Send | None = None) -> None:
        logger.info("Clearing chat %s for user %s", chat_id, user_id)
        transcript = await ChatTranscript.open(self.store, user_id, chat_id)
        await transcript.clear()
        await _emit(send, {"type": "clear", "placeholder": True})

    async def clear_all_memory(self, user_id: str, send: Send | None = None) -> None:
        """Delete the user's chats and memories plus all semantic and long-term memory.

        The affected indexes are dropped and created again.
        """
        logger.info("Clearing all memory for user %s", user_id)
        memory = await self.working_memory(user_id)
        manager = VectorIndexManager(self.store)
        namespaces = [chats_namespace(user_id)]
        namespaces.extend(memory.store_for(kind).namespace for kind in memory.kinds)
        for namespace in namespaces:
            await manager.drop_index(namespace, delete_documents=True)
            await self.store.delete_prefix(key_prefix(namespace))
        await self.store.delete_prefix(f"users:u{user_id}:")
        self._memories.pop(user_id, None)
        await self.working_memory(user_id)
        await _emit(send, {"type": "clear", "placeholder": True})

    async def close(self) -> None:
        await self.backend.close()
