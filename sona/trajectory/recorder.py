# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Recorder for in-flight trajectories.

Summary
-------
Tracks open trajectories by id.  The id handed out by :meth:`begin` is the
one accepted by :meth:`record_step` and :meth:`end`; closed ids are kept in a
bounded history so a repeated ``end`` is reported as ``InvalidState`` rather
than ``NotFound``.

See Also
--------
sona.trajectory.buffer.TrajectoryBuffer
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
import time
from collections import OrderedDict
from typing import Dict, Optional

from sona.common.vectors import VectorLike, as_vector
from sona.errors import InvalidInput, InvalidState, NotFound

from .types import Trajectory, TrajectoryStep

logger = logging.getLogger(__name__)


def check_score(value: float, name: str = "score") -> float:
    """Return ``value`` as float, raising ``InvalidInput`` outside ``[0, 1]``."""

    try:
        score = float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidInput(f"{name} must be a real number") from exc
    if not math.isfinite(score) or not 0.0 <= score <= 1.0:
        raise InvalidInput(f"{name} must lie in [0, 1], got {value!r}")
    return score


def _check_int(value: int, name: str, *, minimum: Optional[int] = None) -> int:
    """Return ``value`` as int, raising ``InvalidInput`` for non-integral input."""

    if isinstance(value, (str, bytes)):
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidInput(f"{name} must be an integer, got {value!r}") from exc
    if number != value:
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    if minimum is not None and number < minimum:
        raise InvalidInput(f"{name} must be at least {minimum}, got {value!r}")
    return number


class TrajectoryRecorder:
    """Allocate, mutate and seal trajectories."""

    def __init__(self, embedding_dim: int, *, closed_history: int = 10000) -> None:
        self.embedding_dim = embedding_dim
        self._ids = itertools.count(1)
        self._open: Dict[int, Trajectory] = {}
        self._closed: "OrderedDict[int, None]" = OrderedDict()
        self._closed_history = max(1, closed_history)
        self._lock = threading.Lock()

    def begin(self, query_embedding: VectorLike) -> int:
        """Open a trajectory for ``query_embedding`` and return its id."""

        emb = as_vector(query_embedding, self.embedding_dim, name="query_embedding")
        with self._lock:
            tid = next(self._ids)
            self._open[tid] = Trajectory(id=tid, query_embedding=emb, started_at=time.monotonic())
        logger.debug("trajectory %d opened", tid)
        return tid

    def record_step(self, trajectory_id: int, node_id: int, score: float, latency_us: int) -> None:
        """Append a step to an open trajectory."""

        step_score = check_score(score)
        step = TrajectoryStep(
            node_id=_check_int(node_id, "node_id"),
            score=step_score,
            latency_us=_check_int(latency_us, "latency_us", minimum=0),
        )
        with self._lock:
            traj = self._lookup(trajectory_id)
            traj.steps.append(step)

    def end(self, trajectory_id: int, final_score: float) -> Trajectory:
        """Seal a trajectory with ``final_score`` and hand it back.

        Raises
        ------
        InvalidInput
            ``final_score`` outside ``[0, 1]``; nothing is changed.
        InvalidState
            The trajectory was already closed.
        NotFound
            The id was never issued.
        """

        score = check_score(final_score, "final_score")
        with self._lock:
            traj = self._lookup(trajectory_id)
            traj.final_score = score
            traj.ended_at = time.monotonic()
            del self._open[trajectory_id]
            self._remember_closed(trajectory_id)
        logger.debug("trajectory %d closed with score %.3f", trajectory_id, score)
        return traj

    def discard(self, trajectory_id: int) -> None:
        """Abandon an open trajectory without submitting it."""

        with self._lock:
            self._lookup(trajectory_id)
            del self._open[trajectory_id]
            self._remember_closed(trajectory_id)

    def open_count(self) -> int:
        with self._lock:
            return len(self._open)

    # ------------------------------------------------------------------
    def _lookup(self, trajectory_id: int) -> Trajectory:
        traj = self._open.get(trajectory_id)
        if traj is not None:
            return traj
        if trajectory_id in self._closed:
            raise InvalidState(f"trajectory {trajectory_id} is already closed")
        raise NotFound(f"unknown trajectory {trajectory_id}")

    def _remember_closed(self, trajectory_id: int) -> None:
        self._closed[trajectory_id] = None
        while len(self._closed) > self._closed_history:
            self._closed.popitem(last=False)


__all__ = ["TrajectoryRecorder", "check_score"]
