"""LLM client interfaces and provider implementations."""

from memchat.llm.generate import ChatBackend, generate_text, run_tool
from memchat.llm.providers import AnthropicBackend, OllamaBackend, OpenAIBackend
from memchat.llm.tools import BoundTool, Tool
from memchat.llm.types import Completion, GenerateResult, Message, ToolCall, ToolResult


def create_chat_backend(provider: str = "openai", **kwargs):
    p = (provider or "openai").strip().lower()
    if p in {"openai", "default"}:
        return OpenAIBackend(**kwargs)
    if p in {"anthropic"}:
        return AnthropicBackend(**kwargs)
    if p in {"ollama", "local"}:
        return OllamaBackend(**kwargs)
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    "AnthropicBackend",
    "BoundTool",
    "ChatBackend",
    "Completion",
    "GenerateResult",
    "Message",
    "OllamaBackend",
    "OpenAIBackend",
    "Tool",
    "ToolCall",
    "ToolResult",
    "create_chat_backend",
    "generate_text",
    "run_tool",
]
