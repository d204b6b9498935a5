"""Builds a ready-to-use controller from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from memchat.chat.controller import ChatController
from memchat.config import Config
from memchat.embeddings.backends import EmbeddingBackend, create_embedder, embed_function
from memchat.llm import create_chat_backend
from memchat.llm.generate import ChatBackend
from memchat.storage.pool import StorePool

logger = logging.getLogger(__name__)


@dataclass
class App:
    config: Config
    pool: StorePool
    embedder: EmbeddingBackend
    controller: ChatController

    async def close(self) -> None:
        await self.controller.close()
        await self.embedder.close()
        await self.pool.close()


def _chat_backend(config: Config) -> ChatBackend:
    chat = config.chat
    kwargs = {
        "model": chat.model,
        "timeout": chat.timeout,
        "temperature": chat.temperature,
        "max_tokens": chat.max_tokens,
    }
    if chat.base_url:
        kwargs["base_url"] = chat.base_url
    return create_chat_backend(chat.provider, **kwargs)


async def build_app(
    config: Config | None = None,
    *,
    pool: StorePool | None = None,
    embedder: EmbeddingBackend | None = None,
    backend: ChatBackend | None = None,
) -> App:
    config = config or Config()
    if config.store_url.startswith("sqlite:///") and not config.store.url:
        config.ensure_dirs()
    pool = pool or StorePool(config.store)
    store = await pool.connect(config.store_url)
    embedder = embedder or create_embedder(config.embedding)
    backend = backend or _chat_backend(config)
    controller = ChatController(
        store,
        embed_function(embedder),
        backend,
        config.memory,
        config.chat,
        vector_dimensions=config.embedding.dims,
    )
    logger.debug("Controller ready on %s", config.store_url)
    return App(config=config, pool=pool, embedder=embedder, controller=controller)
