# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Algorithm Card: SONA adaptive learning engine

Summary
-------
In-process boundary of the adaptive learning core.  Records trajectories,
applies the micro and base low-rank deltas and drives consolidation.

Integration style
-----------------
The host supplies query embeddings, visited node ids and outcome scores; it
calls ``apply_micro``/``apply_base`` on hidden vectors at inference time and
``tick`` (or :meth:`SonaEngine.start_background`) to let consolidation run.

Data structures
---------------
``TrajectoryRecorder`` → ``TrajectoryBuffer`` + ``PatternMemory`` →
``MicroAdapter``; ``LearningScheduler`` → ``Consolidator`` →
``BaseAdapter`` with an ``EwcAnchor``.

Contracts
---------
The enabled flag and the component bundle are guarded by a shared/exclusive
lock held only to copy references.  Each component synchronises itself, so
``apply_*`` never waits on trajectory bookkeeping.  ``reconfigure`` swaps the
whole bundle; calls already in flight finish on the previous one.

Examples
--------
>>> engine = SonaEngine(8)
>>> tid = engine.begin_trajectory([0.1] * 8)
>>> engine.record_step(tid, node_id=42, score=0.8, latency_us=1000)
>>> engine.end_trajectory(tid, 0.85).micro_updated
True
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple, Union

import numpy as np
from omegaconf import DictConfig

from sona.adapters.base import BaseAdapter
from sona.adapters.micro import MicroAdapter
from sona.common.locks import ReadWriteLock
from sona.common.vectors import SignalProjection, VectorLike, as_vector
from sona.config import SonaConfig
from sona.consolidation.scheduler import LearningScheduler
from sona.consolidation.trainer import Consolidator, CycleResult
from sona.consolidation.worker import BackgroundLearner
from sona.errors import Disabled, InvalidInput
from sona.patterns.memory import Pattern, PatternMemory
from sona.stats import EngineStats
from sona.trajectory.buffer import TrajectoryBuffer
from sona.trajectory.recorder import TrajectoryRecorder, check_score

logger = logging.getLogger(__name__)

ConfigLike = Union[SonaConfig, Mapping, DictConfig, str]


@dataclass(frozen=True)
class TrajectoryOutcome:
    """What happened when a trajectory was closed."""

    trajectory_id: int
    final_score: float
    accepted: bool
    micro_updated: bool
    pattern_id: Optional[int] = None


@dataclass(frozen=True)
class _Components:
    config: SonaConfig
    recorder: TrajectoryRecorder
    buffer: TrajectoryBuffer
    patterns: PatternMemory
    micro: MicroAdapter
    base: BaseAdapter
    consolidator: Consolidator
    scheduler: LearningScheduler


def _build(config: SonaConfig) -> _Components:
    projection = SignalProjection(config.embedding_dim, config.hidden_dim, seed=config.seed + 2)
    micro = MicroAdapter(
        config.hidden_dim,
        config.micro_lora_rank,
        config.micro_lora_lr,
        scale=config.micro_scale,
        flush_decay=config.micro_flush_decay,
        seed=config.seed,
        projection=projection,
    )
    base = BaseAdapter(
        config.hidden_dim,
        config.base_lora_rank,
        config.num_layers,
        scale=config.base_scale,
        seed=config.seed,
    )
    buffer = TrajectoryBuffer(config.trajectory_capacity)
    consolidator = Consolidator(config, base, projection=projection)
    scheduler = LearningScheduler(config, buffer, consolidator, micro=micro)
    return _Components(
        config=config,
        recorder=TrajectoryRecorder(config.embedding_dim, closed_history=config.trajectory_capacity),
        buffer=buffer,
        patterns=PatternMemory(
            config.embedding_dim,
            config.pattern_clusters,
            config.cluster_radius,
            backend=config.index_backend,
        ),
        micro=micro,
        base=base,
        consolidator=consolidator,
        scheduler=scheduler,
    )


def _coerce_config(config: ConfigLike) -> SonaConfig:
    if isinstance(config, SonaConfig):
        return config
    if isinstance(config, str):
        return SonaConfig.from_json(config)
    return SonaConfig.from_mapping(config)


class SonaEngine:
    """Online low-rank continual-adaptation engine.

    Parameters
    ----------
    hidden_dim : int, optional
        Build the default configuration for this hidden size.
    config : SonaConfig, mapping or JSON string, optional
        Full configuration; mutually exclusive with ``hidden_dim``.
    """

    def __init__(self, hidden_dim: Optional[int] = None, *, config: Optional[ConfigLike] = None) -> None:
        if (hidden_dim is None) == (config is None):
            raise InvalidInput("pass exactly one of hidden_dim or config")
        cfg = SonaConfig.for_hidden_dim(hidden_dim) if config is None else _coerce_config(config)
        self._lock = ReadWriteLock()
        self._enabled = True
        self._parts = _build(cfg)
        self._background: Optional[BackgroundLearner] = None
        logger.info(
            "engine ready: hidden_dim=%d micro_rank=%d base_rank=%d layers=%d",
            cfg.hidden_dim,
            cfg.micro_lora_rank,
            cfg.base_lora_rank,
            cfg.num_layers,
        )

    @classmethod
    def with_config(cls, config: ConfigLike) -> "SonaEngine":
        return cls(config=config)

    def _view(self) -> Tuple[bool, _Components]:
        with self._lock.read_lock():
            return self._enabled, self._parts

    # ------------------------------------------------------------------
    # Trajectory API
    def begin_trajectory(self, query_embedding: VectorLike) -> int:
        """Open a trajectory and return the id used by the other calls.

        Raises
        ------
        InvalidInput
            Wrong embedding length or non-finite values.
        Disabled
            The engine does not accept new trajectories.
        """

        enabled, parts = self._view()
        if not enabled:
            raise Disabled("engine is disabled; trajectory not started")
        return parts.recorder.begin(query_embedding)

    def record_step(self, trajectory_id: int, node_id: int, score: float, latency_us: int) -> None:
        _, parts = self._view()
        parts.recorder.record_step(trajectory_id, node_id, score, latency_us)

    def end_trajectory(self, trajectory_id: int, final_score: float) -> TrajectoryOutcome:
        """Close a trajectory and feed it to buffer, patterns and micro adapter.

        A trajectory closed while the engine is disabled is sealed and
        dropped; it changes no weights.
        """

        enabled, parts = self._view()
        traj = parts.recorder.end(trajectory_id, final_score)
        score = float(traj.final_score)
        if not enabled:
            logger.debug("engine disabled; dropping trajectory %d", trajectory_id)
            return TrajectoryOutcome(trajectory_id, score, accepted=False, micro_updated=False)
        parts.buffer.push(traj)
        pattern = parts.patterns.insert(traj.query_embedding, score)
        micro_updated = False
        if score >= parts.config.quality_threshold:
            micro_updated = parts.micro.update(traj)
        return TrajectoryOutcome(
            trajectory_id,
            score,
            accepted=True,
            micro_updated=micro_updated,
            pattern_id=pattern.id,
        )

    def learn_from_feedback(
        self,
        trajectory_id: int,
        success: bool,
        latency_ms: float,
        quality: float,
    ) -> TrajectoryOutcome:
        """Close ``trajectory_id`` from a ``(success, latency, quality)`` report.

        Successful outcomes score ``quality``; failures score ``0``.
        """

        quality = check_score(quality, "quality")
        score = quality if success else 0.0
        logger.debug(
            "feedback for trajectory %d: success=%s latency=%.1fms quality=%.3f",
            trajectory_id,
            success,
            float(latency_ms),
            quality,
        )
        return self.end_trajectory(trajectory_id, score)

    # ------------------------------------------------------------------
    # Adaptation API
    def apply_micro(self, input_vector: VectorLike) -> np.ndarray:
        enabled, parts = self._view()
        vec = as_vector(input_vector, parts.config.hidden_dim, name="input_vector")
        if not enabled:
            return vec.copy()
        return parts.micro.apply(vec)

    def apply_base(self, layer_index: int, input_vector: VectorLike) -> np.ndarray:
        enabled, parts = self._view()
        pair = parts.base.layer(layer_index)
        vec = as_vector(input_vector, parts.config.hidden_dim, name="input_vector")
        if not enabled:
            return vec.copy()
        return pair.forward(vec)

    # ------------------------------------------------------------------
    # Scheduling API
    def flush(self) -> int:
        """Hand micro drift to the next consolidation; return flushed updates."""

        enabled, parts = self._view()
        if not enabled:
            return 0
        flushed = parts.micro.flush()
        parts.consolidator.absorb(flushed)
        return 0 if flushed is None else flushed.updates

    run_instant_cycle = flush

    def tick(self) -> bool:
        enabled, parts = self._view()
        return parts.scheduler.tick(enabled)

    def force_learn(self) -> CycleResult:
        enabled, parts = self._view()
        return parts.scheduler.force_learn(enabled)

    def start_background(self, interval: Optional[float] = None) -> None:
        """Call :meth:`tick` every ``interval`` seconds on a daemon thread."""

        if self._background is None:
            self._background = BackgroundLearner(self.tick)
        if interval is None:
            interval = min(1.0, self.config.background_interval_s)
        self._background.start(interval)

    def stop_background(self) -> None:
        if self._background is not None:
            self._background.stop()

    def close(self) -> None:
        self.stop_background()

    def __enter__(self) -> "SonaEngine":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Introspection API
    def stats(self) -> EngineStats:
        enabled, parts = self._view()
        buffer = parts.buffer.counters()
        scheduler = parts.scheduler
        return EngineStats(
            trajectories_buffered=buffer["buffered"],
            trajectories_consumed=buffer["consumed"],
            trajectories_dropped=buffer["dropped"],
            trajectories_open=parts.recorder.open_count(),
            patterns_stored=len(parts.patterns),
            micro_updates=parts.micro.update_count,
            micro_pending=parts.micro.pending_updates,
            cycles_run=scheduler.cycles_run,
            cycles_failed=scheduler.cycles_failed,
            anchor_version=parts.consolidator.anchor.version,
            scheduler_state=scheduler.state.value,
            enabled=enabled,
            last_cycle=scheduler.last_result,
        )

    @property
    def config(self) -> SonaConfig:
        _, parts = self._view()
        return parts.config

    def reconfigure(self, config: ConfigLike) -> None:
        """Replace the configuration as a whole.

        All learned state (buffer, patterns, adapters, anchor) is rebuilt for
        the new configuration; open trajectories are forgotten.
        """

        parts = _build(_coerce_config(config))
        with self._lock.write_lock():
            self._parts = parts
        logger.info("engine reconfigured; learned state reset")

    def set_enabled(self, enabled: bool) -> None:
        with self._lock.write_lock():
            self._enabled = bool(enabled)
        logger.info("engine %s", "enabled" if enabled else "disabled")

    def is_enabled(self) -> bool:
        enabled, _ = self._view()
        return enabled

    # ------------------------------------------------------------------
    # Pattern query API
    def find_patterns(self, query_embedding: VectorLike, k: int) -> List[Tuple[Pattern, float]]:
        _, parts = self._view()
        return parts.patterns.find_similar(query_embedding, k)

    # direct access for hosts that need the underlying components
    @property
    def micro_adapter(self) -> MicroAdapter:
        return self._view()[1].micro

    @property
    def base_adapter(self) -> BaseAdapter:
        return self._view()[1].base

    @property
    def consolidator(self) -> Consolidator:
        return self._view()[1].consolidator

    @property
    def scheduler(self) -> LearningScheduler:
        return self._view()[1].scheduler


__all__ = ["SonaEngine", "TrajectoryOutcome"]
