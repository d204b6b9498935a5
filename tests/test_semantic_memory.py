from __future__ import annotations

import asyncio

import pytest

from memchat.exceptions import EmbeddingFailure, NotFound
from memchat.memory import MemoryOptions, SemanticMemory
from memchat.storage import DocumentStore

VECTORS = {
    "What year is it?": [0.0, 0.0],
    "Which year is it now?": [0.5, 0.0],
    "Who wrote Hamlet?": [4.0, 4.0],
}


async def _embed(text: str) -> list[float]:
    return list(VECTORS[text])


def _options(**kwargs) -> MemoryOptions:
    return MemoryOptions(vector_dimensions=2, embed=_embed, **kwargs)


def test_threshold_gate_is_inclusive():
    async def _run() -> None:
        store = DocumentStore()
        exact = await SemanticMemory.create(store, _options(distance_threshold=0.25))
        await exact.add("What year is it?", "2025")
        # squared L2 between [0.5, 0] and [0, 0] is exactly 0.25
        hits = await exact.search("Which year is it now?")
        assert [(h.type, h.answer, h.distance) for h in hits] == [("semantic", "2025", 0.25)]

        strict = SemanticMemory(store, _options(distance_threshold=0.2499))
        assert await strict.search("Which year is it now?") == []
        await store.close()

    asyncio.run(_run())


def test_default_threshold_and_top_k():
    async def _run() -> None:
        store = DocumentStore()
        memory = await SemanticMemory.create(store, _options())
        assert memory.threshold == 0.4
        await memory.add("What year is it?", "2025")
        await memory.add("Who wrote Hamlet?", "Shakespeare")
        hits = await memory.search("Which year is it now?", top_k=5)
        # Hamlet is 28.25 away and never passes the gate
        assert [h.answer for h in hits] == ["2025"]
        await store.close()

    asyncio.run(_run())


def test_adding_same_question_twice_updates_in_place():
    async def _run() -> None:
        store = DocumentStore()
        memory = await SemanticMemory.create(store, _options())
        first = await memory.add("What year is it?", "2024")
        second = await memory.add("What year is it?", "2025")
        assert first == second
        assert await store.keys("semantic-memory:") == [f"semantic-memory:{first}"]
        entry = await memory.get(first)
        assert entry["answer"] == "2025"
        await store.close()

    asyncio.run(_run())


def test_update_missing_entry_raises():
    async def _run() -> None:
        store = DocumentStore()
        memory = await SemanticMemory.create(store, _options())
        with pytest.raises(NotFound):
            await memory.update("missing", "What year is it?", "2025")
        await store.close()

    asyncio.run(_run())


def test_ttl_expires_entries():
    now = [0.0]

    async def _run() -> None:
        store = DocumentStore(clock=lambda: now[0])
        memory = await SemanticMemory.create(store, _options())
        await memory.add("What year is it?", "2025", ttl=60)
        assert await memory.search("What year is it?")
        now[0] += 61
        assert await memory.search("What year is it?") == []
        await store.close()

    asyncio.run(_run())


def test_embedding_errors_surface_as_embedding_failure():
    async def broken(text: str) -> list[float]:
        raise ConnectionError("provider down")

    async def _run() -> None:
        store = DocumentStore()
        memory = await SemanticMemory.create(store, MemoryOptions(vector_dimensions=2, embed=broken))
        with pytest.raises(EmbeddingFailure):
            await memory.search("anything")
        await store.close()

    asyncio.run(_run())


def test_dimension_is_inferred_once_from_sentinel():
    calls: list[str] = []

    async def embed(text: str) -> list[float]:
        calls.append(text)
        return [0.0, 0.0, 0.0]

    async def _run() -> None:
        store = DocumentStore()
        memory = await SemanticMemory.create(store, MemoryOptions(embed=embed))
        assert memory.dims == 3
        await memory.initialize()
        assert calls == ["Hello, world!"]
        await store.close()

    asyncio.run(_run())
