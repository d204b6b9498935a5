"""Chat backends with tool calling (OpenAI, Anthropic, Ollama)."""

from __future__ import annotations

import os
from typing import Any, Sequence

import httpx

from memchat.exceptions import LLMFailure
from memchat.llm.tools import BoundTool
from memchat.llm.types import Completion, Message, ToolCall
from memchat.utils import json_dumps, json_loads, random_id


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json_loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class _HTTPBackend:
    provider = ""
    api_key_env = ""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "",
        base_url: str = "",
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or (os.environ.get(self.api_key_env, "") if self.api_key_env else "")
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    def _headers(self) -> dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self.api_key_env and not self.api_key:
            raise LLMFailure(f"{self.api_key_env} is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.post(path, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LLMFailure(
                f"{self.provider} returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMFailure(f"{self.provider} request failed: {exc}") from exc
        self._stats["calls"] += 1
        return resp.json()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "total_tokens": self._stats["input_tokens"] + self._stats["output_tokens"],
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAIBackend(_HTTPBackend):
    provider = "openai"
    api_key_env = "OPENAI_API_KEY"

    def __init__(self, api_key: str | None = None, model: str = "", base_url: str = "", **kwargs: Any) -> None:
        super().__init__(
            api_key,
            model=model or "gpt-4.1-mini",
            base_url=base_url or "https://api.openai.com/v1",
            **kwargs,
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    @staticmethod
    def _wire_message(m: Message) -> dict[str, Any]:
        if m.role == "tool" and m.tool_result is not None:
            return {"role": "tool", "tool_call_id": m.tool_result.call_id, "content": m.content}
        out: dict[str, Any] = {"role": m.role, "content": m.content}
        if m.tool_calls:
            out["content"] = m.content or None
            out["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": json_dumps(c.arguments)},
                }
                for c in m.tool_calls
            ]
        return out

    async def complete(self, messages: list[Message], tools: Sequence[BoundTool] = ()) -> Completion:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [self._wire_message(m) for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters(),
                    },
                }
                for t in tools
            ]
        data = await self._post("/chat/completions", body)
        try:
            choice = data["choices"][0]
        except (KeyError, IndexError) as exc:
            raise LLMFailure("openai response has no choices") from exc
        message = choice.get("message", {})
        usage = data.get("usage", {})
        self._stats["input_tokens"] += int(usage.get("prompt_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("completion_tokens", 0))
        calls = [
            ToolCall(
                id=str(tc.get("id") or random_id()),
                name=str(tc.get("function", {}).get("name", "")),
                arguments=_parse_arguments(tc.get("function", {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]
        return Completion(
            text=str(message.get("content") or ""),
            tool_calls=calls,
            model=str(data.get("model", self.model)),
            finish_reason=str(choice.get("finish_reason", "")),
            usage=usage,
            raw=data,
        )


class AnthropicBackend(_HTTPBackend):
    provider = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(self, api_key: str | None = None, model: str = "", base_url: str = "", **kwargs: Any) -> None:
        super().__init__(
            api_key,
            model=model or "claude-3-5-sonnet-latest",
            base_url=base_url or "https://api.anthropic.com/v1",
            **kwargs,
        )

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}

    @staticmethod
    def _wire_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        system = ""
        out: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                system += m.content + "\n"
                continue
            if m.role == "tool" and m.tool_result is not None:
                block = {
                    "type": "tool_result",
                    "tool_use_id": m.tool_result.call_id,
                    "content": m.content,
                    "is_error": m.tool_result.is_error,
                }
                # consecutive tool results go back in one user turn
                if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                    out[-1]["content"].append(block)
                else:
                    out.append({"role": "user", "content": [block]})
                continue
            if m.role == "assistant" and m.tool_calls:
                blocks: list[dict[str, Any]] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                blocks.extend(
                    {"type": "tool_use", "id": c.id, "name": c.name, "input": c.arguments}
                    for c in m.tool_calls
                )
                out.append({"role": "assistant", "content": blocks})
                continue
            role = "assistant" if m.role == "assistant" else "user"
            out.append({"role": role, "content": m.content})
        return system.strip(), out

    async def complete(self, messages: list[Message], tools: Sequence[BoundTool] = ()) -> Completion:
        system, chat_msgs = self._wire_messages(messages)
        body: dict[str, Any] = {
            "model": self.model,
            "messages": chat_msgs,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters()}
                for t in tools
            ]
        data = await self._post("/messages", body)
        text = ""
        calls: list[ToolCall] = []
        for blk in data.get("content", []):
            if not isinstance(blk, dict):
                continue
            if blk.get("type") == "text":
                text += str(blk.get("text", ""))
            elif blk.get("type") == "tool_use":
                calls.append(
                    ToolCall(
                        id=str(blk.get("id") or random_id()),
                        name=str(blk.get("name", "")),
                        arguments=_parse_arguments(blk.get("input")),
                    )
                )
        usage = data.get("usage", {})
        self._stats["input_tokens"] += int(usage.get("input_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("output_tokens", 0))
        return Completion(
            text=text,
            tool_calls=calls,
            model=self.model,
            finish_reason=str(data.get("stop_reason", "")),
            usage=usage,
            raw=data,
        )


class OllamaBackend(_HTTPBackend):
    provider = "ollama"

    def __init__(self, model: str = "", base_url: str = "", **kwargs: Any) -> None:
        kwargs.pop("api_key", None)
        super().__init__(
            None,
            model=model or "llama3.1:8b-instruct",
            base_url=base_url or "http://127.0.0.1:11434",
            **kwargs,
        )

    @staticmethod
    def _wire_message(m: Message) -> dict[str, Any]:
        if m.role == "tool":
            return {"role": "tool", "content": m.content}
        out: dict[str, Any] = {"role": m.role, "content": m.content}
        if m.tool_calls:
            out["tool_calls"] = [
                {"function": {"name": c.name, "arguments": c.arguments}} for c in m.tool_calls
            ]
        return out

    async def complete(self, messages: list[Message], tools: Sequence[BoundTool] = ()) -> Completion:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [self._wire_message(m) for m in messages],
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters(),
                    },
                }
                for t in tools
            ]
        data = await self._post("/api/chat", body)
        msg = data.get("message", {})
        calls = [
            ToolCall(
                id=random_id(),
                name=str(tc.get("function", {}).get("name", "")),
                arguments=_parse_arguments(tc.get("function", {}).get("arguments")),
            )
            for tc in msg.get("tool_calls") or []
        ]
        self._stats["input_tokens"] += int(data.get("prompt_eval_count", 0))
        self._stats["output_tokens"] += int(data.get("eval_count", 0))
        return Completion(
            text=str(msg.get("content", "")),
            tool_calls=calls,
            model=self.model,
            finish_reason=str(data.get("done_reason", "")),
            raw=data,
        )
