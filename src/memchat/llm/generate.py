"""Tool-calling generation loop."""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence, runtime_checkable

from memchat.exceptions import ToolError
from memchat.llm.tools import BoundTool
from memchat.llm.types import Completion, GenerateResult, Message, ToolCall, ToolResult
from memchat.utils import json_dumps

logger = logging.getLogger(__name__)


@runtime_checkable
class ChatBackend(Protocol):
    async def complete(
        self,
        messages: list[Message],
        tools: Sequence[BoundTool] = (),
    ) -> Completion: ...

    @property
    def stats(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json_dumps(value)


async def run_tool(tools: dict[str, BoundTool], call: ToolCall) -> ToolResult:
    """Execute one tool call. Tool errors become error results; anything else propagates."""
    tool = tools.get(call.name)
    if tool is None:
        return ToolResult(call.id, call.name, f"Unknown tool: {call.name}", is_error=True)
    try:
        value = await tool.execute(call.arguments)
    except ToolError as exc:
        logger.warning("Tool %s failed: %s", call.name, exc)
        return ToolResult(call.id, call.name, f"Error: {exc}", is_error=True)
    return ToolResult(call.id, call.name, _render(value))


async def generate_text(
    backend: ChatBackend,
    messages: Sequence[Message],
    tools: Sequence[BoundTool] = (),
    max_steps: int = 10,
) -> GenerateResult:
    """Complete, run any requested tools, feed results back; repeat until plain text.

    Stops after ``max_steps`` completions and returns the last text seen.
    """
    history = list(messages)
    by_name = {t.name: t for t in tools}
    result = GenerateResult(text="")
    for step in range(1, max(1, max_steps) + 1):
        completion = await backend.complete(history, tools)
        result.steps = step
        result.text = completion.text
        if not completion.tool_calls:
            return result
        history.append(Message.assistant(completion.text, completion.tool_calls))
        for call in completion.tool_calls:
            tool_result = await run_tool(by_name, call)
            result.tool_calls.append(call)
            result.tool_results.append(tool_result)
            history.append(Message.tool(tool_result))
    logger.warning("Generation stopped after %d steps with tool calls pending", result.steps)
    return result
