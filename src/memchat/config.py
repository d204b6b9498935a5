"""memchat configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path(os.environ.get("MEMCHAT_DATA_DIR", Path.cwd() / "data"))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


class StoreConfig(BaseModel):
    # Empty url means "<data_dir>/memchat.db"
    url: str = Field(default_factory=lambda: os.environ.get("MEMCHAT_STORE_URL", ""))
    retry_attempts: int = 5
    retry_delay: float = 0.2
    busy_timeout: float = 30.0


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MEMCHAT_EMBED_PROVIDER", "openai"))
    model: str = Field(
        default_factory=lambda: os.environ.get("MEMCHAT_EMBED_MODEL", "text-embedding-3-small")
    )
    # <= 0 infers the dimension from a sentinel embedding on first use
    dims: int = Field(default_factory=lambda: _env_int("MEMCHAT_EMBED_DIMS", 1536))
    base_url: str = ""
    timeout: float = 30.0


class ChatConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MEMCHAT_CHAT_PROVIDER", "openai"))
    model: str = Field(default_factory=lambda: os.environ.get("MEMCHAT_CHAT_MODEL", ""))
    base_url: str = ""
    timeout: float = 120.0
    temperature: float = 0.3
    max_tokens: int = 4096
    max_steps: int = 10


class MemoryConfig(BaseModel):
    semantic_threshold: float = 0.4
    episodic_threshold: float = 0.4
    long_term_threshold: float = 0.12
    top_k: int = 1
    search_timeout: float = 30.0
    extract_long_term: bool = True
    summarize_after: int = 5


class LogConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.environ.get("MEMCHAT_LOG_LEVEL", "INFO"))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    store: StoreConfig = Field(default_factory=StoreConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    log: LogConfig = Field(default_factory=LogConfig)

    @property
    def store_url(self) -> str:
        if self.store.url:
            return self.store.url
        return f"sqlite:///{self.data_dir / 'memchat.db'}"

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
