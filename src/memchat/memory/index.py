"""Search index creation for memory namespaces."""

from __future__ import annotations

import logging

from memchat.embeddings.backends import EmbedFn
from memchat.exceptions import DimensionMismatch, IndexAlreadyExists, IndexNotFound
from memchat.storage.document_store import DocumentStore
from memchat.storage.schema import IndexSchema, VectorField

logger = logging.getLogger(__name__)

SENTINEL_TEXT = "Hello, world!"


def index_name(namespace: str) -> str:
    """``users:u1:memory:episodic`` -> ``idx-users-u1-memory-episodic``."""
    return "idx-" + namespace.replace(":", "-")


def key_prefix(namespace: str) -> str:
    return f"{namespace}:"


async def resolve_dimensions(embed: EmbedFn, configured: int) -> int:
    """Return ``configured`` when positive, else the length of a sentinel embedding."""
    if configured > 0:
        return configured
    vec = await embed(SENTINEL_TEXT)
    if not vec:
        raise ValueError("embedding function returned an empty vector")
    return len(vec)


class VectorIndexManager:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def ensure_index(self, namespace: str, schema: IndexSchema) -> bool:
        """Create the namespace's index unless it exists.

        Returns True only for the call that created it. An existing index
        whose vector fields disagree in dimension raises DimensionMismatch.
        """
        name = index_name(namespace)
        existing = await self.store.index_info(name)
        if existing is None:
            try:
                await self.store.create_index(name, schema, key_prefix(namespace))
            except IndexAlreadyExists:
                existing = await self.store.index_info(name)
            else:
                logger.info("Created index %s", name)
                return True
        if existing is not None:
            _check_dimensions(name, existing.schema, schema)
        return False

    async def drop_index(self, namespace: str, delete_documents: bool = False) -> bool:
        try:
            await self.store.drop_index(index_name(namespace), delete_documents=delete_documents)
        except IndexNotFound:
            return False
        logger.info("Dropped index %s", index_name(namespace))
        return True


def _check_dimensions(name: str, existing: IndexSchema, requested: IndexSchema) -> None:
    for want in requested.vector_fields:
        try:
            have = existing.field(want.name)
        except KeyError:
            continue
        if isinstance(have, VectorField) and have.dims != want.dims:
            raise DimensionMismatch(
                f"index {name} stores {have.name} with {have.dims} dimensions, "
                f"requested {want.dims}"
            )
