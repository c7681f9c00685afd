"""Dataclasses for recorded trajectories."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np


@dataclass(frozen=True)
class TrajectoryStep:
    """One decision within a trajectory."""

    node_id: int
    score: float
    latency_us: int


@dataclass
class Trajectory:
    """One interaction episode from query to outcome.

    Summary
    -------
    Open while ``final_score`` is ``None``; closed once it is set.

    Parameters
    ----------
    id : int
        Identifier assigned by the recorder, never reused.
    query_embedding : numpy.ndarray
        Query vector ``(embedding_dim,)``.
    steps : list of TrajectoryStep
        Decisions in the order they were recorded.
    final_score : float, optional
        Outcome score in ``[0, 1]``.
    started_at, ended_at : float
        ``time.monotonic`` timestamps.
    """

    id: int
    query_embedding: np.ndarray
    steps: List[TrajectoryStep] = field(default_factory=list)
    final_score: Optional[float] = None
    started_at: float = 0.0
    ended_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self.final_score is not None

    @property
    def total_latency_us(self) -> int:
        return sum(step.latency_us for step in self.steps)

    @property
    def mean_step_score(self) -> float:
        if not self.steps:
            return 0.0
        return float(np.mean([step.score for step in self.steps]))


__all__ = ["Trajectory", "TrajectoryStep"]
