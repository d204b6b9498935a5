from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from memchat.chat import ChatController
from memchat.chat import prompts
from memchat.config import MemoryConfig
from memchat.exceptions import LLMFailure, NotFound
from memchat.llm import Completion, Message, ToolCall
from memchat.memory import ChatTranscript
from memchat.storage import DocumentStore

DIMS = 16


def _one_hot_embed():
    """Each distinct text gets its own axis, so only identical texts match."""
    seen: dict[str, int] = {}

    async def embed(text: str) -> list[float]:
        idx = seen.setdefault(text, len(seen))
        vec = [0.0] * DIMS
        vec[idx % DIMS] = 1.0
        return vec

    return embed


class _ScriptedBackend:
    def __init__(self, respond: Callable[[list[Message], list[Any]], Completion]) -> None:
        self.respond = respond
        self.calls: list[list[Message]] = []

    async def complete(self, messages, tools=()):
        self.calls.append(list(messages))
        return self.respond(list(messages), list(tools))

    @property
    def stats(self) -> dict[str, Any]:
        return {"calls": len(self.calls)}

    async def close(self) -> None:
        pass


def _controller(store, backend, **memory) -> ChatController:
    memory.setdefault("extract_long_term", False)
    return ChatController(store, _one_hot_embed(), backend, MemoryConfig(**memory), vector_dimensions=DIMS)


def test_second_identical_question_is_answered_from_memory():
    def respond(messages, tools):
        if messages[-1].role == "tool":
            return Completion(text="It is 2025.")
        return Completion(
            text="",
            tool_calls=[
                ToolCall(
                    id="call-1",
                    name="add_memory",
                    arguments={"type": "semantic", "question": "What year is it?", "answer": "2025"},
                )
            ],
        )

    async def _run() -> None:
        store = DocumentStore()
        backend = _ScriptedBackend(respond)
        controller = _controller(store, backend)

        first = await controller.process_message("u1", "What year is it?")
        assert first.error is None
        assert first.answer.content == "It is 2025."
        assert not first.cached
        assert [c.name for c in first.tool_calls] == ["add_memory"]
        assert len(backend.calls) == 2
        assert "search_memory" in backend.calls[0][0].content

        events: list[dict] = []
        second = await controller.process_message("u1", "What year is it?", send=events.append)
        assert second.chat_id != first.chat_id
        assert second.cached
        assert second.answer.content == "2025"
        assert len(backend.calls) == 2

        assert [e["type"] for e in events] == ["message", "message", "message"]
        assert events[0]["message"]["content"] == "What year is it?"
        pending_id = events[1]["message"]["id"]
        assert pending_id.startswith("pending-")
        assert events[2]["replaceId"] == pending_id
        assert events[2]["message"]["content"] == "2025"

        transcript = await ChatTranscript.open(store, "u1", second.chat_id)
        assert [(m.role, m.content) for m in await transcript.messages()] == [
            ("user", "What year is it?"),
            ("assistant", "2025"),
        ]
        await store.close()

    asyncio.run(_run())


def test_failed_answer_replaces_placeholder_and_keeps_user_message():
    def respond(messages, tools):
        raise LLMFailure("openai returned 500")

    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(respond))
        events: list[dict] = []

        async def send(event: dict) -> None:
            events.append(event)

        reply = await controller.process_message("u1", "hello", send=send)
        assert reply.answer is None
        assert "500" in reply.error
        assert events[-1]["replaceId"] == events[1]["message"]["id"]
        assert events[-1]["message"]["content"] == prompts.ERROR_MESSAGE

        transcript = await ChatTranscript.open(store, "u1", reply.chat_id)
        assert [m.content for m in await transcript.messages()] == ["hello"]
        await store.close()

    asyncio.run(_run())


def test_empty_model_answer_is_an_error():
    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(lambda messages, tools: Completion(text="  ")))
        reply = await controller.process_message("u1", "hello")
        assert reply.error
        await store.close()

    asyncio.run(_run())


def test_summary_is_written_to_chat_and_episodic_memory():
    def respond(messages, tools):
        if messages[0].content == prompts.SUMMARY_PROMPT:
            assert not tools
            return Completion(text="User greeted the assistant.")
        return Completion(text="Hi!")

    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(respond), summarize_after=2)
        reply = await controller.process_message("u1", "hello")
        assert reply.memory_errors == []

        transcript = await ChatTranscript.open(store, "u1", reply.chat_id)
        assert await transcript.summary() == "User greeted the assistant."
        memory = await controller.working_memory("u1")
        assert await memory.episodic.find_by_chat(reply.chat_id) is not None

        # below the threshold nothing happens
        assert await controller.summarize_chat("u1", reply.chat_id) is None
        await store.close()

    asyncio.run(_run())


def test_new_turn_is_extracted_into_long_term_memory():
    def respond(messages, tools):
        system = messages[0].content
        if "extract_memories" in system:
            if messages[-1].role == "tool" or not messages[-1].content.startswith("user:"):
                return Completion(text="done")
            return Completion(
                text="",
                tool_calls=[
                    ToolCall(
                        id="x-1",
                        name="extract_memories",
                        arguments={
                            "memories": [
                                {
                                    "type": "semantic",
                                    "requiresUserId": True,
                                    "question": "What is the user's favorite color?",
                                    "text": "User's favorite color is green",
                                    "topics": ["preferences"],
                                    "entities": [],
                                    "eventDate": None,
                                }
                            ]
                        },
                    )
                ],
            )
        return Completion(text="Noted.")

    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(respond), extract_long_term=True)
        reply = await controller.process_message("u1", "My favorite color is green")
        assert reply.memory_errors == []

        memory = await controller.working_memory("u1")
        hits = await memory.long_term.search("What is the user's favorite color?")
        assert [h.answer for h in hits] == ["User's favorite color is green"]

        transcript = await ChatTranscript.open(store, "u1", reply.chat_id)
        assert [m.extracted for m in await transcript.messages()] == ["t", "t"]

        # the stored fact now answers the question without the model
        again = await controller.process_message("u1", "What is the user's favorite color?")
        assert again.cached
        assert again.answer.content == "User's favorite color is green"
        await store.close()

    asyncio.run(_run())


def test_extraction_failure_does_not_fail_the_reply():
    def respond(messages, tools):
        if "extract_memories" in messages[0].content:
            raise LLMFailure("extraction model down")
        return Completion(text="Hi!")

    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(respond), extract_long_term=True)
        reply = await controller.process_message("u1", "hello")
        assert reply.error is None
        assert reply.answer.content == "Hi!"
        assert len(reply.memory_errors) == 1
        assert reply.memory_errors[0].startswith("extraction:")
        await store.close()

    asyncio.run(_run())


def test_chat_listing_switching_and_clearing():
    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(lambda messages, tools: Completion(text="Hi!")))
        events: list[dict] = []
        chat_id = await controller.new_chat("u1", send=events.append)
        assert events[0] == {
            "type": "chats",
            "chats": [{"chatId": chat_id, "preview": "New chat"}],
            "currentChatId": chat_id,
        }
        assert events[1] == {"type": "clear", "placeholder": True}

        await controller.process_message("u1", "hello", chat_id=chat_id)
        previews = await controller.list_chats("u1")
        assert [(p.chat_id, p.preview) for p in previews] == [(chat_id, "Hi!")]

        view = await controller.switch_chat("u1", chat_id)
        assert [m.content for m in view.messages] == ["hello", "Hi!"]

        await controller.clear_chat("u1", chat_id)
        assert (await controller.switch_chat("u1", chat_id)).messages == []
        assert [p.preview for p in await controller.list_chats("u1")] == ["New chat"]
        await store.close()

    asyncio.run(_run())


def test_clear_all_memory_forgets_chats_and_cached_answers():
    def respond(messages, tools):
        if messages[-1].role == "tool":
            return Completion(text="It is 2025.")
        return Completion(
            text="",
            tool_calls=[
                ToolCall(
                    id="call-1",
                    name="add_memory",
                    arguments={"type": "semantic", "question": "What year is it?", "answer": "2025"},
                )
            ],
        )

    async def _run() -> None:
        store = DocumentStore()
        backend = _ScriptedBackend(respond)
        controller = _controller(store, backend)
        await controller.process_message("u1", "What year is it?")
        assert (await controller.process_message("u1", "What year is it?")).cached

        await controller.clear_all_memory("u1")
        assert await controller.list_chats("u1") == []
        memory = await controller.working_memory("u1")
        assert await memory.semantic.search("What year is it?") == []

        reply = await controller.process_message("u1", "What year is it?")
        assert not reply.cached
        assert len(backend.calls) == 4
        await store.close()

    asyncio.run(_run())


def test_regenerate_replaces_assistant_message_in_place():
    answers = iter(["first", "second"])

    async def _run() -> None:
        store = DocumentStore()
        controller = _controller(store, _ScriptedBackend(lambda messages, tools: Completion(text=next(answers))))
        reply = await controller.process_message("u1", "Tell me a joke")
        assert reply.answer.content == "first"

        message = await controller.regenerate("u1", reply.chat_id, reply.answer.id)
        assert message.id == reply.answer.id
        assert message.content == "second"
        transcript = await ChatTranscript.open(store, "u1", reply.chat_id)
        assert [m.content for m in await transcript.messages()] == ["Tell me a joke", "second"]

        with pytest.raises(NotFound):
            await controller.regenerate("u1", reply.chat_id, reply.user_message.id)
        await store.close()

    asyncio.run(_run())
