from __future__ import annotations

import asyncio
import time

import pytest

from memchat.exceptions import StoreUnavailable, ToolError
from memchat.llm import ToolCall, run_tool
from memchat.memory import MemoryHit, MemoryOptions, WorkingMemory, memory_tools
from memchat.storage import DocumentStore


class _FixedStore:
    writable = False

    def __init__(self, kind: str, distance: float, delay: float = 0.0, error: Exception | None = None):
        self.kind = kind
        self.distance = distance
        self.delay = delay
        self.error = error

        self.cancelled = False

    async def search(self, query: str, top_k: int | None = None) -> list[MemoryHit]:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return [MemoryHit(type=self.kind, id=f"{self.kind}-1", distance=self.distance)]


def test_hits_are_merged_by_ascending_distance():
    async def _run() -> None:
        memory = WorkingMemory(
            {
                "semantic": _FixedStore("semantic", 0.3),
                "episodic": _FixedStore("episodic", 0.1),
                "long-term": _FixedStore("long-term", 0.2),
            }
        )
        hits = await memory.search("anything")
        assert [(h.type, h.distance) for h in hits] == [
            ("episodic", 0.1),
            ("long-term", 0.2),
            ("semantic", 0.3),
        ]
        assert [h.type for h in await memory.search("anything", top_k=2)] == ["episodic", "long-term"]

    asyncio.run(_run())


def test_searches_run_concurrently():
    async def _run() -> None:
        memory = WorkingMemory(
            {kind: _FixedStore(kind, 0.1, delay=0.2) for kind in ("semantic", "episodic", "long-term")}
        )
        start = time.monotonic()
        await memory.search("anything")
        assert time.monotonic() - start < 0.5

    asyncio.run(_run())


def test_one_failing_store_fails_the_search():
    async def _run() -> None:
        slow = _FixedStore("long-term", 0.2, delay=5.0)
        memory = WorkingMemory(
            {
                "semantic": _FixedStore("semantic", 0.3),
                "episodic": _FixedStore("episodic", 0.1, error=StoreUnavailable("down")),
                "long-term": slow,
            }
        )
        start = time.monotonic()
        with pytest.raises(StoreUnavailable):
            await memory.search("anything")
        assert time.monotonic() - start < 1.0
        # the abandoned search has finished unwinding before the error surfaces
        assert slow.cancelled

    asyncio.run(_run())


def test_shared_deadline_expires_as_store_unavailable():
    async def _run() -> None:
        memory = WorkingMemory({"semantic": _FixedStore("semantic", 0.1, delay=5.0)}, search_timeout=0.05)
        with pytest.raises(StoreUnavailable):
            await memory.search("anything")

    asyncio.run(_run())


VECTORS = {
    "Hello, world!": [1.0, 1.0, 1.0],
    "What year is it?": [1.0, 0.0, 0.0],
    "What is my name?": [0.0, 1.0, 0.0],
    "2025": [0.0, 0.0, 1.0],
    "Ada": [0.0, 0.5, 1.0],
}


async def _embed(text: str) -> list[float]:
    return list(VECTORS[text])


def _tools_by_name(memory: WorkingMemory):
    return {t.name: t for t in memory_tools(memory)}


def test_memory_tools_write_and_read_through_working_memory():
    async def _run() -> None:
        store = DocumentStore()
        memory = await WorkingMemory.create(store, "u1", MemoryOptions(embed=_embed))
        tools = _tools_by_name(memory)
        assert set(tools) == {"search_memory", "add_memory", "update_memory"}
        assert tools["add_memory"].parameters()["properties"]["type"]["type"] == "string"

        assert await tools["search_memory"].execute({"query": "What year is it?"}) == ""
        entry_id = await tools["add_memory"].execute(
            {"type": "semantic", "question": "What year is it?", "answer": "2025"}
        )
        assert await tools["search_memory"].execute({"query": "What year is it?"}) == "2025"

        await tools["add_memory"].execute({"type": "long-term", "question": "What is my name?", "answer": "Ada"})
        assert await tools["search_memory"].execute({"query": "What is my name?"}) == "Ada"

        same = await tools["update_memory"].execute(
            {"type": "semantic", "id": entry_id, "question": "What year is it?", "answer": "2026"}
        )
        assert same == entry_id
        assert await tools["search_memory"].execute({"query": "What year is it?"}) == "2026"
        await store.close()

    asyncio.run(_run())


def test_failed_tool_writes_are_reported_as_errors():
    async def _run() -> None:
        store = DocumentStore()
        memory = await WorkingMemory.create(store, "u1", MemoryOptions(vector_dimensions=3, embed=_embed))
        tools = _tools_by_name(memory)

        with pytest.raises(ToolError):
            await tools["add_memory"].execute({"type": "procedural", "question": "What year is it?", "answer": "2025"})
        with pytest.raises(ToolError):
            await tools["add_memory"].execute({"type": "episodic", "question": "What year is it?", "answer": "2025"})
        with pytest.raises(ToolError):
            await tools["add_memory"].execute({"type": "semantic", "question": "What year is it?"})
        with pytest.raises(ToolError):
            await tools["update_memory"].execute(
                {"type": "semantic", "id": "missing", "question": "What year is it?", "answer": "2025"}
            )

        result = await run_tool(
            tools,
            ToolCall(id="call-1", name="update_memory", arguments={"type": "semantic", "id": "missing", "question": "What year is it?", "answer": "2025"}),
        )
        assert result.is_error
        assert "does not exist" in result.content
        assert (await run_tool(tools, ToolCall(id="call-2", name="nope"))).is_error
        await store.close()

    asyncio.run(_run())


def test_store_for_resolves_registered_kinds():
    async def _run() -> None:
        store = DocumentStore()
        memory = await WorkingMemory.create(store, "u1", MemoryOptions(vector_dimensions=3, embed=_embed))
        assert memory.store_for("semantic") is memory.semantic
        assert memory.store_for("long-term") is memory.long_term
        with pytest.raises(ValueError):
            memory.store_for("procedural")
        await store.close()

    asyncio.run(_run())
