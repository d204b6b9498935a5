"""K-nearest-neighbour execution over indexed vector fields.

FLAT fields are scanned exhaustively with numpy. HNSW fields are served by a
FAISS graph that is cached per (index, field) and rebuilt after any write to
the store. Filtered HNSW queries fall back to an exact scan over the matching
documents, which is what a graph index does for small filtered sets anyway.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import faiss
import numpy as np

from memchat.storage.schema import COSINE, FLAT, HNSW, IP, L2, VectorField


def to_vector(value: object, dims: int) -> np.ndarray | None:
    """Coerce a stored JSON array into a float32 vector, None if not indexable."""
    if not isinstance(value, list) or len(value) != dims:
        return None
    try:
        vec = np.asarray(value, dtype=np.float32)
    except (TypeError, ValueError):
        return None
    if vec.ndim != 1:
        return None
    return vec


def exact_distances(matrix: np.ndarray, query: np.ndarray, metric: str) -> np.ndarray:
    """Distances from ``query`` to every row of ``matrix``.

    L2 is the squared Euclidean distance. COSINE and IP report ``1 - score``.
    """
    if matrix.shape[0] == 0:
        return np.zeros((0,), dtype=np.float32)
    if metric == L2:
        diff = matrix - query
        return np.einsum("ij,ij->i", diff, diff)
    if metric == IP:
        return 1.0 - matrix @ query
    if metric == COSINE:
        row_norms = np.linalg.norm(matrix, axis=1)
        q_norm = float(np.linalg.norm(query))
        denom = row_norms * q_norm
        sims = np.zeros((matrix.shape[0],), dtype=np.float32)
        nonzero = denom > 0
        sims[nonzero] = (matrix[nonzero] @ query) / denom[nonzero]
        return 1.0 - sims
    raise ValueError(f"unsupported distance metric: {metric}")


class HNSWGraph:
    """FAISS HNSW graph with external key mapping."""

    def __init__(self, dims: int, metric: str = COSINE, m: int = 16) -> None:
        self.dims = dims
        self.metric = metric
        faiss_metric = faiss.METRIC_L2 if metric == L2 else faiss.METRIC_INNER_PRODUCT
        self._index = faiss.IndexHNSWFlat(dims, m, faiss_metric)
        self._keys: list[str] = []

    @property
    def size(self) -> int:
        return self._index.ntotal

    def add_batch(self, keys: list[str], vectors: np.ndarray) -> None:
        if len(keys) != len(vectors):
            raise ValueError("keys and vectors length mismatch")
        if not keys:
            return
        vecs = np.ascontiguousarray(vectors.astype(np.float32))
        if self.metric == COSINE:
            faiss.normalize_L2(vecs)
        self._index.add(vecs)
        self._keys.extend(keys)

    def search(self, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        if self._index.ntotal == 0 or k <= 0:
            return []
        vec = np.ascontiguousarray(query.reshape(1, -1).astype(np.float32))
        if self.metric == COSINE:
            faiss.normalize_L2(vec)
        k = min(k, self._index.ntotal)
        self._index.hnsw.efSearch = max(64, k)
        scores, indices = self._index.search(vec, k)
        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0 or idx >= len(self._keys):
                continue
            distance = float(score) if self.metric == L2 else 1.0 - float(score)
            results.append((self._keys[idx], distance))
        return results


@dataclass
class _CachedGraph:
    generation: object
    graph: HNSWGraph


class VectorSearcher:
    """Runs KNN queries for the document store."""

    def __init__(self) -> None:
        self._graphs: dict[tuple[str, str], _CachedGraph] = {}
        self._lock = threading.Lock()

    def knn(
        self,
        index_name: str,
        field: VectorField,
        candidates: list[tuple[str, np.ndarray]],
        query: np.ndarray,
        k: int,
        *,
        generation: object,
        filtered: bool = False,
    ) -> list[tuple[str, float]]:
        """Return up to ``k`` (key, distance) pairs sorted ascending."""
        if not candidates or k <= 0:
            return []
        if field.algorithm == HNSW and not filtered:
            graph = self._graph_for(index_name, field, candidates, generation)
            hits = graph.search(query, k)
        else:
            keys = [key for key, _ in candidates]
            matrix = np.stack([vec for _, vec in candidates]).astype(np.float32, copy=False)
            distances = exact_distances(matrix, query.astype(np.float32), field.metric)
            order = np.argsort(distances, kind="stable")[:k]
            hits = [(keys[i], float(distances[i])) for i in order]
        hits.sort(key=lambda hit: hit[1])
        return hits

    def invalidate(self, index_name: str | None = None) -> None:
        with self._lock:
            if index_name is None:
                self._graphs.clear()
                return
            for cache_key in [ck for ck in self._graphs if ck[0] == index_name]:
                del self._graphs[cache_key]

    def _graph_for(
        self,
        index_name: str,
        field: VectorField,
        candidates: list[tuple[str, np.ndarray]],
        generation: object,
    ) -> HNSWGraph:
        cache_key = (index_name, field.name)
        with self._lock:
            cached = self._graphs.get(cache_key)
            if cached is not None and cached.generation == generation:
                return cached.graph
            graph = HNSWGraph(field.dims, field.metric, field.hnsw_m)
            graph.add_batch(
                [key for key, _ in candidates],
                np.stack([vec for _, vec in candidates]),
            )
            self._graphs[cache_key] = _CachedGraph(generation=generation, graph=graph)
            return graph


__all__ = ["FLAT", "HNSW", "HNSWGraph", "VectorSearcher", "exact_distances", "to_vector"]
