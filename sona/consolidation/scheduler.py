# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Background learning scheduler.

Summary
-------
Decides when a consolidation cycle is due (elapsed time or buffered volume)
and runs at most one cycle at a time.  Any caller may be the one whose
``tick`` triggers the cycle; a concurrent attempt is rejected instead of
waiting.

See Also
--------
sona.consolidation.trainer.Consolidator
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional, Sequence

from sona.adapters.micro import MicroAdapter
from sona.config import SonaConfig
from sona.trajectory.buffer import TrajectoryBuffer
from sona.trajectory.types import Trajectory

from .trainer import BUSY, DISABLED, NOTHING_TO_LEARN, Consolidator, CycleResult

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    DUE = "due"
    RUNNING = "running"


class LearningScheduler:
    """Time/volume triggered driver of :class:`Consolidator`.

    Parameters
    ----------
    config : SonaConfig
        Supplies ``background_interval_s`` and ``batch_size``.
    buffer : TrajectoryBuffer
        Source of closed trajectories.
    consolidator : Consolidator
        Runs the actual cycle.
    micro : MicroAdapter, optional
        Its live drift joins the cycle and is settled only once it commits.
    clock : callable, optional
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        config: SonaConfig,
        buffer: TrajectoryBuffer,
        consolidator: Consolidator,
        *,
        micro: Optional[MicroAdapter] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.buffer = buffer
        self.consolidator = consolidator
        self.micro = micro
        self._clock = clock
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self.last_cycle_at = clock()
        self.cycles_run = 0
        self.cycles_failed = 0
        self.last_result: Optional[CycleResult] = None

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SchedulerState) -> None:
        with self._state_lock:
            self._state = state

    def is_due(self) -> bool:
        elapsed = self._clock() - self.last_cycle_at
        return elapsed >= self.config.background_interval_s or len(self.buffer) > self.config.batch_size

    # ------------------------------------------------------------------
    def tick(self, enabled: bool = True) -> bool:
        """Run a cycle if one is due; return whether a cycle completed."""

        if not enabled or not self.is_due():
            return False
        if not self._run_lock.acquire(blocking=False):
            logger.debug("tick skipped; cycle already running")
            return False
        try:
            self._set_state(SchedulerState.DUE)
            batch = self.buffer.snapshot()
            if not batch:
                self.last_cycle_at = self._clock()
                return False
            return self._run(batch).ran
        finally:
            self._set_state(SchedulerState.IDLE)
            self._run_lock.release()

    def force_learn(self, enabled: bool = True) -> CycleResult:
        """Run a cycle now regardless of the due check.

        Returns a ``nothing_to_learn``, ``disabled`` or ``busy`` result
        instead of raising when no cycle can run.
        """

        if not enabled:
            return self._no_cycle(DISABLED, "engine disabled")
        if not self._run_lock.acquire(blocking=False):
            return self._no_cycle(BUSY, "consolidation already running")
        try:
            batch = self.buffer.snapshot()
            if not batch:
                return self._no_cycle(NOTHING_TO_LEARN, "no buffered trajectories")
            return self._run(batch)
        finally:
            self._set_state(SchedulerState.IDLE)
            self._run_lock.release()

    # ------------------------------------------------------------------
    def _run(self, batch: Sequence[Trajectory]) -> CycleResult:
        """Caller holds ``_run_lock``."""

        self._set_state(SchedulerState.RUNNING)
        drift = self.micro.drift() if self.micro is not None else None
        result = self.consolidator.consolidate(batch, drift=drift)
        if result.ran:
            self.buffer.remove(t.id for t in batch)
            if drift is not None:
                self.micro.settle(drift)
            self.cycles_run += 1
        else:
            self.cycles_failed += 1
        self.last_result = result
        self.last_cycle_at = self._clock()
        return result

    def _no_cycle(self, status: str, message: str) -> CycleResult:
        return CycleResult(
            status=status,
            batch_size=0,
            anchor_version=self.consolidator.anchor.version,
            baseline=self.consolidator.baseline,
            message=message,
        )


__all__ = ["LearningScheduler", "SchedulerState"]
