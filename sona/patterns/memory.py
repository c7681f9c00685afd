# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Algorithm Card: Pattern Memory

Summary
-------
Clustered index over trajectory query embeddings.  Each pattern is a running
mean centroid with a member count and the mean final score of its members.

Data structures
---------------
``Pattern`` records keyed by id plus an ``IndexStrategy`` (NumPy or FAISS)
holding the centroids.

Pipeline
--------
1. ``insert`` finds the nearest centroid by Euclidean distance.
2. Within ``cluster_radius`` the embedding is folded into that centroid.
3. Otherwise a new pattern is created; at capacity the two closest existing
   centroids are merged first (member-weighted, lower id survives).

Contracts
---------
Distance is Euclidean.  ``find_similar`` orders by ascending distance, then
higher ``member_count``, then lower id.  Pattern count never exceeds
``capacity``.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence, Tuple

import numpy as np

from sona.common.vectors import VectorLike, as_vector

from .index import IndexStrategy, make_index

logger = logging.getLogger(__name__)

# extra candidates fetched from the index so ties at the cut-off are ranked
_TIE_SLACK = 16


@dataclass
class Pattern:
    """Cluster centroid summarising similar trajectories."""

    id: int
    centroid: np.ndarray
    member_count: int
    aggregate_quality: float
    created_step: int
    updated_step: int

    def copy(self) -> "Pattern":
        return replace(self, centroid=self.centroid.copy())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "centroid": self.centroid.tolist(),
            "member_count": self.member_count,
            "aggregate_quality": self.aggregate_quality,
        }


class PatternMemory:
    """Incremental Euclidean clustering with nearest-neighbour lookup.

    Parameters
    ----------
    dim : int
        Embedding dimensionality.
    capacity : int
        Maximum number of patterns.
    radius : float
        Merge radius; an embedding within this distance of the nearest
        centroid joins that pattern.
    index : IndexStrategy, optional
        Centroid index; defaults to :class:`~sona.patterns.index.NumpyIndex`.

    Examples
    --------
    >>> mem = PatternMemory(2, capacity=4, radius=0.1)
    >>> _ = mem.insert([0.0, 0.0], 0.5)
    >>> _ = mem.insert([0.0, 0.0], 0.7)
    >>> len(mem), mem.patterns()[0].member_count
    (1, 2)
    """

    def __init__(
        self,
        dim: int,
        capacity: int,
        radius: float,
        *,
        index: IndexStrategy | None = None,
        backend: str = "numpy",
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.dim = dim
        self.capacity = capacity
        self.radius = float(radius)
        self.index = index or make_index(backend, dim)
        self._patterns: Dict[int, Pattern] = {}
        self._ids = itertools.count(1)
        self._step = 0
        self._merges = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    def insert(self, embedding: VectorLike, score: float) -> Pattern:
        """Fold ``embedding`` with outcome ``score`` into the memory.

        Returns
        -------
        Pattern
            Copy of the pattern that received the embedding.
        """

        emb = as_vector(embedding, self.dim, name="embedding")
        score = float(score)
        with self._lock:
            self._step += 1
            nearest = self._nearest(emb, 1)
            if nearest and nearest[0][1] <= self.radius:
                pattern = self._absorb(self._patterns[nearest[0][0]], emb, score, 1)
                return pattern.copy()
            if len(self._patterns) >= self.capacity:
                if len(self._patterns) < 2:
                    # nothing to merge; the lone pattern takes the embedding
                    pattern = self._absorb(self._patterns[nearest[0][0]], emb, score, 1)
                    return pattern.copy()
                self._merge_closest_pair()
            pattern = Pattern(
                id=next(self._ids),
                centroid=emb.copy(),
                member_count=1,
                aggregate_quality=score,
                created_step=self._step,
                updated_step=self._step,
            )
            self._patterns[pattern.id] = pattern
            self.index.add(pattern.centroid, pattern.id)
            logger.debug("pattern %d created (%d stored)", pattern.id, len(self._patterns))
            return pattern.copy()

    def find_similar(self, query: VectorLike, k: int) -> List[Tuple[Pattern, float]]:
        """Return up to ``k`` ``(pattern, distance)`` pairs nearest to ``query``.

        An empty memory or ``k <= 0`` yields ``[]``.
        """

        q = as_vector(query, self.dim, name="query_embedding")
        if k <= 0:
            return []
        with self._lock:
            ranked = self._nearest(q, k)
            hits = [(self._patterns[pid].copy(), dist) for pid, dist in ranked]
        return hits

    def patterns(self) -> List[Pattern]:
        """Snapshot of all patterns ordered by id."""

        with self._lock:
            return [self._patterns[pid].copy() for pid in sorted(self._patterns)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    def log_status(self) -> dict:
        with self._lock:
            return {
                "patterns": len(self._patterns),
                "inserts": self._step,
                "merges": self._merges,
            }

    # ------------------------------------------------------------------
    def _nearest(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """Exactly re-rank index candidates; caller holds the lock."""

        if not self._patterns:
            return []
        _, ids = self.index.search(query, min(self.index.ntotal, k + _TIE_SLACK))
        return self._rank(query, [int(i) for i in ids])[:k]

    def _rank(self, query: np.ndarray, ids: Sequence[int]) -> List[Tuple[int, float]]:
        q = query.astype("float64")
        scored = []
        for pid in ids:
            pattern = self._patterns[pid]
            dist = float(np.linalg.norm(pattern.centroid.astype("float64") - q))
            scored.append((dist, -pattern.member_count, pid))
        scored.sort()
        return [(pid, dist) for dist, _neg_count, pid in scored]

    def _absorb(self, pattern: Pattern, centroid: np.ndarray, quality: float, count: int) -> Pattern:
        total = pattern.member_count + count
        weight = count / total
        pattern.centroid = (pattern.centroid + (centroid - pattern.centroid) * weight).astype("float32")
        pattern.aggregate_quality += (quality - pattern.aggregate_quality) * weight
        pattern.member_count = total
        pattern.updated_step = self._step
        self.index.update(pattern.centroid, pattern.id)
        return pattern

    def _merge_closest_pair(self) -> None:
        ids = sorted(self._patterns)
        mat = np.stack([self._patterns[pid].centroid for pid in ids]).astype("float64")
        sq = np.sum(mat**2, axis=1)
        d2 = sq[:, None] + sq[None, :] - 2.0 * mat @ mat.T
        np.fill_diagonal(d2, np.inf)
        d2 = np.maximum(d2, 0.0)
        # row-major argmin picks the lowest id pair among equal distances
        i, j = np.unravel_index(int(np.argmin(d2)), d2.shape)
        keep, gone = self._patterns[ids[min(i, j)]], self._patterns.pop(ids[max(i, j)])
        self.index.remove(gone.id)
        self._absorb(keep, gone.centroid, gone.aggregate_quality, gone.member_count)
        self._merges += 1
        logger.debug("capacity reached; merged pattern %d into %d", gone.id, keep.id)


__all__ = ["Pattern", "PatternMemory"]
