"""Centroid index backends for pattern memory.

Both backends use squared Euclidean distance.  They only generate
candidates; :class:`~sona.patterns.memory.PatternMemory` recomputes exact
distances and applies the deterministic ordering itself.
"""

from __future__ import annotations

import logging
from typing import Dict, Protocol, Tuple

import numpy as np

from sona._faiss import faiss

logger = logging.getLogger(__name__)


class IndexStrategy(Protocol):
    """Protocol for centroid index backends."""

    def add(self, key: np.ndarray, idx: int) -> None:
        """Add ``key`` with identifier ``idx``."""

    def search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return squared distances and ids of the ``k`` nearest keys."""

    def remove(self, idx: int) -> None:
        """Remove vector with identifier ``idx``."""

    def update(self, key: np.ndarray, idx: int) -> None:
        """Replace vector at ``idx`` with ``key``."""

    @property
    def ntotal(self) -> int:
        """Number of stored vectors."""


class NumpyIndex(IndexStrategy):
    """Exhaustive in-memory L2 index."""

    def __init__(self, dim: int) -> None:
        self.dim = dim
        self._vecs: Dict[int, np.ndarray] = {}

    def add(self, key: np.ndarray, idx: int) -> None:
        self._vecs[idx] = np.asarray(key, dtype="float32").reshape(-1).copy()

    def search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        if not self._vecs or k <= 0:
            return np.empty(0, dtype="float32"), np.empty(0, dtype="int64")
        ids = np.fromiter(self._vecs.keys(), dtype="int64", count=len(self._vecs))
        keys = np.stack(list(self._vecs.values()))
        q = np.asarray(query, dtype="float32").reshape(-1)
        dists = np.sum((keys - q) ** 2, axis=1)
        # stable sort on id-ordered input keeps equal distances in id order
        order = np.argsort(ids, kind="stable")
        ids, dists = ids[order], dists[order]
        top = np.argsort(dists, kind="stable")[:k]
        return dists[top], ids[top]

    def remove(self, idx: int) -> None:
        self._vecs.pop(idx, None)

    def update(self, key: np.ndarray, idx: int) -> None:
        self.add(key, idx)

    @property
    def ntotal(self) -> int:
        return len(self._vecs)


class FaissIndex(IndexStrategy):
    """FAISS ``IndexFlatL2`` wrapped in an id map."""

    def __init__(self, dim: int) -> None:
        if faiss is None:
            raise RuntimeError("index_backend='faiss' requires the faiss package")
        self.dim = dim
        self.index = faiss.IndexIDMap(faiss.IndexFlatL2(dim))

    def add(self, key: np.ndarray, idx: int) -> None:
        vec = np.ascontiguousarray(np.asarray(key, dtype="float32").reshape(1, -1))
        self.index.add_with_ids(vec, np.array([idx], dtype="int64"))

    def search(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        k = min(k, self.ntotal)
        if k <= 0:
            return np.empty(0, dtype="float32"), np.empty(0, dtype="int64")
        q = np.ascontiguousarray(np.asarray(query, dtype="float32").reshape(1, -1))
        dists, ids = self.index.search(q, k)
        mask = ids[0] >= 0
        return dists[0][mask], ids[0][mask]

    def remove(self, idx: int) -> None:
        self.index.remove_ids(np.array([idx], dtype="int64"))

    def update(self, key: np.ndarray, idx: int) -> None:
        self.remove(idx)
        self.add(key, idx)

    @property
    def ntotal(self) -> int:
        return int(self.index.ntotal)


def make_index(backend: str, dim: int) -> IndexStrategy:
    """Return the index backend named ``backend``."""

    if backend == "faiss":
        return FaissIndex(dim)
    if backend == "numpy":
        return NumpyIndex(dim)
    raise ValueError(f"unknown index backend {backend!r}")


__all__ = ["IndexStrategy", "NumpyIndex", "FaissIndex", "make_index"]
