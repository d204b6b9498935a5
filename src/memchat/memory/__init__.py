"""Tiered memory: semantic, episodic, long-term and the working-memory union."""

from memchat.memory.base import (
    MemoryHit,
    MemoryOptions,
    MemoryStore,
    memory_kind,
    memory_kinds,
    register_memory_kind,
    within_threshold,
)
from memchat.memory.episodic import EpisodicMemory
from memchat.memory.index import VectorIndexManager, index_name, resolve_dimensions
from memchat.memory.long_term import (
    ExtractedMemory,
    LongTermMemory,
    MemorySearch,
    llm_extractor,
    memory_hash,
)
from memchat.memory.semantic import SemanticMemory
from memchat.memory.tools import memory_tools
from memchat.memory.transcript import ChatListing, ChatMessage, ChatTranscript
from memchat.memory.working import WorkingMemory

__all__ = [
    "ChatListing",
    "ChatMessage",
    "ChatTranscript",
    "EpisodicMemory",
    "ExtractedMemory",
    "LongTermMemory",
    "MemoryHit",
    "MemoryOptions",
    "MemorySearch",
    "MemoryStore",
    "SemanticMemory",
    "VectorIndexManager",
    "WorkingMemory",
    "index_name",
    "llm_extractor",
    "memory_hash",
    "memory_kind",
    "memory_kinds",
    "memory_tools",
    "register_memory_kind",
    "resolve_dimensions",
    "within_threshold",
]
