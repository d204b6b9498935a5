"""Embedding backend abstraction."""

from __future__ import annotations

import hashlib
import os
import re
from typing import Awaitable, Callable, Protocol, runtime_checkable

import httpx
import numpy as np

from memchat.config import EmbeddingConfig
from memchat.exceptions import EmbeddingFailure

EmbedFn = Callable[[str], Awaitable[list[float]]]


@runtime_checkable
class EmbeddingBackend(Protocol):
    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


class OpenAIEmbedder:
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dims: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.model = model
        self.dims = dims
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise EmbeddingFailure("OPENAI_API_KEY is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, max(self.dims, 0)), dtype=np.float32)
        client = await self._get_client()
        body: dict = {"model": self.model, "input": texts}
        # text-embedding-3 models can shorten their output on request
        if self.dims > 0 and self.model.startswith("text-embedding-3"):
            body["dimensions"] = self.dims
        try:
            resp = await client.post("/embeddings", json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingFailure(f"OpenAI embedding request failed: {exc}") from exc
        data = resp.json()
        rows = sorted(data.get("data", []), key=lambda x: x.get("index", 0))
        return np.array([x["embedding"] for x in rows], dtype=np.float32)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OllamaEmbedder:
    def __init__(
        self,
        model: str = "nomic-embed-text",
        dims: int = 768,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.dims = dims
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, max(self.dims, 0)), dtype=np.float32)
        client = await self._get_client()
        out: list[list[float]] = []
        for text in texts:
            try:
                resp = await client.post("/api/embeddings", json={"model": self.model, "prompt": text})
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise EmbeddingFailure(f"Ollama embedding request failed: {exc}") from exc
            out.append(resp.json().get("embedding", []))
        return np.array(out, dtype=np.float32)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class HashEmbedder:
    """Deterministic local embedder using token hashing (no network/API keys).

    Identical texts map to bit-identical vectors, so an exact repeat of a
    stored question is found at distance 0.
    """

    _TOKEN_RE = re.compile(r"[a-z0-9_]+")

    def __init__(self, dims: int = 384) -> None:
        self.dims = max(32, int(dims))

    def _encode(self, text: str) -> np.ndarray:
        tokens = self._TOKEN_RE.findall((text or "").lower())
        vec = np.zeros((self.dims,), dtype=np.float32)
        if not tokens:
            return vec

        features = list(tokens)
        features.extend(f"{tokens[i]}_{tokens[i+1]}" for i in range(len(tokens) - 1))
        for feat in features:
            digest = hashlib.blake2b(feat.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little", signed=False) % self.dims
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        norm = float(np.linalg.norm(vec))
        if norm > 0.0:
            vec /= norm
        return vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        return np.stack([self._encode(t) for t in texts]).astype(np.float32, copy=False)

    async def embed_single(self, text: str) -> np.ndarray:
        return self._encode(text)

    async def close(self) -> None:
        return None


def embed_function(backend: EmbeddingBackend) -> EmbedFn:
    """Adapt a backend to the ``embed(text) -> list[float]`` shape the memory stores take."""

    async def embed(text: str) -> list[float]:
        vec = await backend.embed_single(text)
        return [float(x) for x in np.asarray(vec, dtype=np.float32).ravel()]

    return embed


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingBackend:
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "openai").strip().lower()
    if provider == "openai":
        kwargs = {"model": cfg.model, "dims": cfg.dims, "timeout": cfg.timeout}
        if cfg.base_url:
            kwargs["base_url"] = cfg.base_url
        return OpenAIEmbedder(**kwargs)
    if provider in {"ollama", "local"}:
        kwargs = {"dims": cfg.dims, "timeout": cfg.timeout}
        if cfg.model and not cfg.model.startswith("text-embedding-3"):
            kwargs["model"] = cfg.model
        if cfg.base_url:
            kwargs["base_url"] = cfg.base_url
        return OllamaEmbedder(**kwargs)
    if provider in {"hash", "localhash"}:
        return HashEmbedder(dims=cfg.dims if cfg.dims > 0 else 384)
    raise ValueError(f"Unsupported embedding provider: {cfg.provider}")
