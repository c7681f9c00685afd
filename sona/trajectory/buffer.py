# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Bounded holding area for closed trajectories awaiting consolidation."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, Iterable, List

from .types import Trajectory

logger = logging.getLogger(__name__)


class TrajectoryBuffer:
    """FIFO buffer with oldest-eviction once ``capacity`` is reached.

    Summary
    -------
    ``snapshot`` copies the current contents for a consolidation cycle; the
    cycle later calls ``remove`` with the ids it consumed, so trajectories
    pushed in between stay for the next cycle.

    Examples
    --------
    >>> buf = TrajectoryBuffer(1)
    >>> buf.capacity
    1
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: Deque[Trajectory] = deque()
        self._lock = threading.Lock()
        self._pushed = 0
        self._dropped = 0
        self._consumed = 0

    def push(self, trajectory: Trajectory) -> None:
        if not trajectory.closed:
            raise ValueError(f"trajectory {trajectory.id} is still open")
        with self._lock:
            if len(self._items) >= self.capacity:
                evicted = self._items.popleft()
                self._dropped += 1
                logger.debug("buffer full; evicted trajectory %d", evicted.id)
            self._items.append(trajectory)
            self._pushed += 1

    def snapshot(self) -> List[Trajectory]:
        with self._lock:
            return list(self._items)

    def remove(self, ids: Iterable[int]) -> int:
        """Drop trajectories whose id is in ``ids``; return how many went."""

        wanted = set(ids)
        with self._lock:
            kept = deque(t for t in self._items if t.id not in wanted)
            removed = len(self._items) - len(kept)
            self._items = kept
            self._consumed += removed
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def counters(self) -> dict:
        """Return pushed/dropped/consumed counts and current size."""

        with self._lock:
            return {
                "buffered": len(self._items),
                "pushed": self._pushed,
                "dropped": self._dropped,
                "consumed": self._consumed,
            }


__all__ = ["TrajectoryBuffer"]
