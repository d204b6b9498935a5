from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from pydantic import BaseModel

from memchat.config import EmbeddingConfig
from memchat.embeddings import OpenAIEmbedder, create_embedder, embed_function
from memchat.exceptions import EmbeddingFailure, LLMFailure
from memchat.llm import (
    AnthropicBackend,
    Completion,
    Message,
    OpenAIBackend,
    Tool,
    ToolCall,
    ToolResult,
    create_chat_backend,
    generate_text,
)


class _EchoInput(BaseModel):
    text: str


async def _echo(target, args: _EchoInput) -> str:
    target.append(args.text)
    return args.text.upper()


def test_openai_backend_request_and_tool_calls():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/chat/completions")
        assert request.headers["authorization"] == "Bearer sk-test"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "model": "gpt-test",
                "choices": [
                    {
                        "finish_reason": "tool_calls",
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "echo", "arguments": '{"text": "hi"}'},
                                }
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 7, "completion_tokens": 3},
            },
        )

    async def _run() -> None:
        backend = OpenAIBackend(api_key="sk-test", model="gpt-test", transport=httpx.MockTransport(handler))
        tool = Tool("echo", "Echo text", _EchoInput, _echo).bind([])
        history = [
            Message.system("be brief"),
            Message.assistant("", [ToolCall(id="call_0", name="echo", arguments={"text": "a"})]),
            Message.tool(ToolResult("call_0", "echo", "A")),
        ]
        completion = await backend.complete(history, [tool])
        assert completion.tool_calls == [ToolCall(id="call_1", name="echo", arguments={"text": "hi"})]
        assert completion.text == ""
        assert backend.stats["total_tokens"] == 10

        body = seen[0]
        assert body["model"] == "gpt-test"
        assert body["tools"][0]["function"]["name"] == "echo"
        assert body["tools"][0]["function"]["parameters"]["properties"]["text"]["type"] == "string"
        assert body["messages"][1]["tool_calls"][0]["function"]["arguments"] == '{"text":"a"}'
        assert body["messages"][2] == {"role": "tool", "tool_call_id": "call_0", "content": "A"}
        await backend.close()

    asyncio.run(_run())


def test_anthropic_backend_wire_format():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/messages")
        assert request.headers["x-api-key"] == "ak-test"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Let me check. "},
                    {"type": "tool_use", "id": "tu_1", "name": "echo", "input": {"text": "x"}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 5, "output_tokens": 2},
            },
        )

    async def _run() -> None:
        backend = AnthropicBackend(api_key="ak-test", transport=httpx.MockTransport(handler))
        history = [
            Message.system("be brief"),
            Message.user("hi"),
            Message.assistant("", [ToolCall("a", "echo", {"text": "1"}), ToolCall("b", "echo", {"text": "2"})]),
            Message.tool(ToolResult("a", "echo", "1")),
            Message.tool(ToolResult("b", "echo", "2", is_error=True)),
        ]
        completion = await backend.complete(history)
        assert completion.text == "Let me check. "
        assert completion.tool_calls[0].arguments == {"text": "x"}
        assert completion.finish_reason == "tool_use"

        body = seen[0]
        assert body["system"] == "be brief"
        assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
        results = body["messages"][2]["content"]
        assert [b["tool_use_id"] for b in results] == ["a", "b"]
        assert results[1]["is_error"] is True
        await backend.close()

    asyncio.run(_run())


def test_http_errors_and_missing_key_raise_llm_failure(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    async def _run() -> None:
        with pytest.raises(LLMFailure):
            await OpenAIBackend().complete([Message.user("hi")])

        failing = OpenAIBackend(
            api_key="sk-test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )
        with pytest.raises(LLMFailure, match="500"):
            await failing.complete([Message.user("hi")])
        await failing.close()

    asyncio.run(_run())


def test_create_chat_backend_rejects_unknown_provider():
    assert isinstance(create_chat_backend("anthropic", api_key="k"), AnthropicBackend)
    with pytest.raises(ValueError):
        create_chat_backend("nope")


class _ScriptedBackend:
    def __init__(self, completions: list[Completion]) -> None:
        self.completions = list(completions)
        self.seen: list[list[Message]] = []

    async def complete(self, messages, tools=()):
        self.seen.append(list(messages))
        return self.completions.pop(0)

    @property
    def stats(self) -> dict:
        return {}

    async def close(self) -> None:
        pass


def test_generate_text_runs_tools_until_plain_text():
    async def _run() -> None:
        echoed: list[str] = []
        tool = Tool("echo", "Echo text", _EchoInput, _echo).bind(echoed)
        backend = _ScriptedBackend(
            [
                Completion(text="", tool_calls=[ToolCall("c1", "echo", {"text": "hi"}), ToolCall("c2", "echo", {})]),
                Completion(text="done"),
            ]
        )
        result = await generate_text(backend, [Message.user("go")], [tool])
        assert result.text == "done"
        assert result.steps == 2
        assert echoed == ["hi"]
        assert [r.content for r in result.tool_results][0] == "HI"
        assert result.tool_results[1].is_error

        second_call = backend.seen[1]
        assert [m.role for m in second_call] == ["user", "assistant", "tool", "tool"]

    asyncio.run(_run())


def test_generate_text_stops_at_max_steps():
    async def _run() -> None:
        tool = Tool("echo", "Echo text", _EchoInput, _echo).bind([])
        looping = Completion(text="thinking", tool_calls=[ToolCall("c", "echo", {"text": "x"})])
        backend = _ScriptedBackend([looping, looping, looping])
        result = await generate_text(backend, [Message.user("go")], [tool], max_steps=2)
        assert result.steps == 2
        assert result.text == "thinking"
        assert len(backend.seen) == 2

    asyncio.run(_run())


def test_openai_embedder_requests_dimensions():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    async def _run() -> None:
        embedder = OpenAIEmbedder(api_key="sk-test", dims=2, transport=httpx.MockTransport(handler))
        vecs = await embedder.embed(["a", "b"])
        assert vecs.tolist() == [[1.0, 0.0], [0.0, 1.0]]
        assert seen[0] == {"model": "text-embedding-3-small", "input": ["a", "b"], "dimensions": 2}
        assert await embed_function(embedder)("a") == [1.0, 0.0]
        await embedder.close()

    asyncio.run(_run())


def test_embedder_failures_raise_embedding_failure(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    async def _run() -> None:
        with pytest.raises(EmbeddingFailure):
            await OpenAIEmbedder().embed(["a"])
        failing = OpenAIEmbedder(
            api_key="sk-test",
            transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down")),
        )
        with pytest.raises(EmbeddingFailure):
            await failing.embed(["a"])
        await failing.close()

    asyncio.run(_run())


def test_hash_embedder_is_deterministic():
    async def _run() -> None:
        embedder = create_embedder(EmbeddingConfig(provider="hash", dims=64))
        embed = embed_function(embedder)
        first = await embed("What year is it?")
        assert len(first) == 64
        assert first == await embed("What year is it?")
        assert first != await embed("Who won the match?")

    asyncio.run(_run())
