"""Prompts for answering and summarizing."""

from __future__ import annotations

from typing import Sequence

from memchat.memory.base import MemoryHit
from memchat.memory.transcript import ChatMessage

ANSWER_PROMPT = """\
You are a helpful assistant with a memory.

- Call `search_memory` when the answer may depend on earlier conversations
  with this user or on facts stored before.
- Call `add_memory` to keep anything worth remembering: use type "semantic"
  for facts true for anyone and "long-term" for facts about this user.
- Call `update_memory` when a stored memory is out of date.
- When memory gave you relevant information, build your answer from it.
"""

SUMMARY_PROMPT = """\
Summarize the conversation below in a few sentences. Keep names, decisions,
preferences and open questions. If a previous summary is given, fold it in
so the result describes the whole conversation.
"""

ERROR_MESSAGE = "An error occurred while processing your message."
PENDING_CONTENT = "..."


def answer_system_prompt(summary: str = "", context: Sequence[MemoryHit] = ()) -> str:
    parts = [ANSWER_PROMPT]
    if summary:
        parts.append(f"Summary of the conversation so far:\n{summary}\n")
    if context:
        lines = "\n".join(f"- {hit.answer}" for hit in context if hit.answer)
        if lines:
            parts.append(f"Summaries of earlier conversations with this user:\n{lines}\n")
    return "\n".join(parts)


def summary_request(previous: str, messages: Sequence[ChatMessage]) -> str:
    transcript = "\n".join(f"{m.role}: {m.content}" for m in messages)
    if previous:
        return f"Previous summary:\n{previous}\n\nNew messages:\n{transcript}"
    return f"Messages:\n{transcript}"
