"""One document store per target URL, shared by every component that uses it."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from memchat.config import StoreConfig
from memchat.storage.document_store import DocumentStore

logger = logging.getLogger(__name__)


def parse_store_url(url: str) -> str:
    """Map a store URL to a SQLite database path.

    ``sqlite:///path/to.db`` opens a file, ``memory://name`` (or ``memory://``)
    an in-process database.
    """
    if url.startswith("sqlite:///"):
        return str(Path(url[len("sqlite:///"):]).expanduser())
    if url.startswith("memory://"):
        return ":memory:"
    raise ValueError(f"Unsupported store url: {url}")


class StorePool:
    """Lazily opens and caches a :class:`DocumentStore` per URL."""

    def __init__(self, config: StoreConfig | None = None) -> None:
        self.config = config or StoreConfig()
        self._stores: dict[str, DocumentStore] = {}
        self._lock = asyncio.Lock()

    def get(self, url: str) -> DocumentStore:
        store = self._stores.get(url)
        if store is None or store.closed:
            store = DocumentStore(
                parse_store_url(url),
                retry_attempts=self.config.retry_attempts,
                retry_delay=self.config.retry_delay,
                busy_timeout=self.config.busy_timeout,
            )
            self._stores[url] = store
            logger.debug("Opened store %s", url)
        return store

    async def connect(self, url: str) -> DocumentStore:
        """Return the store for ``url`` after checking it answers."""
        async with self._lock:
            store = self.get(url)
        await store.ping()
        return store

    def __contains__(self, url: str) -> bool:
        return url in self._stores

    def __len__(self) -> int:
        return len(self._stores)

    async def close(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.close()
