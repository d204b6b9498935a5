from __future__ import annotations

import asyncio

import pytest

from memchat.exceptions import DimensionMismatch, StoreUnavailable
from memchat.memory.index import SENTINEL_TEXT, VectorIndexManager, index_name, resolve_dimensions
from memchat.storage import FLAT, L2, DocumentStore, IndexSchema, TagField, VectorField


def _schema(dims: int) -> IndexSchema:
    return IndexSchema(fields=(VectorField("embedding", dims, algorithm=FLAT, metric=L2), TagField("id")))


def test_index_name_is_derived_from_namespace():
    assert index_name("semantic-memory") == "idx-semantic-memory"
    assert index_name("users:u7:memory:episodic") == "idx-users-u7-memory-episodic"


def test_ensure_index_is_idempotent():
    async def _run() -> None:
        store = DocumentStore()
        manager = VectorIndexManager(store)
        created = [await manager.ensure_index("notes", _schema(4)) for _ in range(3)]
        assert created == [True, False, False]
        assert await store.list_indexes() == ["idx-notes"]
        assert (await store.index_info("idx-notes")).prefix == "notes:"
        await store.close()

    asyncio.run(_run())


def test_concurrent_ensure_index_creates_exactly_one(tmp_path):
    async def _run() -> None:
        store = DocumentStore(tmp_path / "idx.db")
        manager = VectorIndexManager(store)
        created = await asyncio.gather(*(manager.ensure_index("notes", _schema(4)) for _ in range(8)))
        assert created.count(True) == 1
        assert await store.list_indexes() == ["idx-notes"]
        await store.close()

    asyncio.run(_run())


def test_dimension_mismatch_is_a_hard_error():
    async def _run() -> None:
        store = DocumentStore()
        manager = VectorIndexManager(store)
        await manager.ensure_index("notes", _schema(4))
        with pytest.raises(DimensionMismatch):
            await manager.ensure_index("notes", _schema(8))
        await store.close()

    asyncio.run(_run())


def test_unreachable_store_propagates():
    async def _run() -> None:
        store = DocumentStore()
        await store.close()
        with pytest.raises(StoreUnavailable):
            await VectorIndexManager(store).ensure_index("notes", _schema(4))

    asyncio.run(_run())


def test_drop_index_reports_whether_it_existed():
    async def _run() -> None:
        store = DocumentStore()
        manager = VectorIndexManager(store)
        await manager.ensure_index("notes", _schema(4))
        assert await manager.drop_index("notes")
        assert not await manager.drop_index("notes")
        await store.close()

    asyncio.run(_run())


def test_resolve_dimensions_embeds_sentinel_only_when_unset():
    seen: list[str] = []

    async def embed(text: str) -> list[float]:
        seen.append(text)
        return [0.0] * 5

    async def _run() -> None:
        assert await resolve_dimensions(embed, 3) == 3
        assert seen == []
        assert await resolve_dimensions(embed, -1) == 5
        assert seen == [SENTINEL_TEXT]

    asyncio.run(_run())
