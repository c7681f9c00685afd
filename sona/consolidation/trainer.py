# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Algorithm Card: Base consolidation with EWC

Summary
-------
Folds a batch of closed trajectories (and any flushed micro drift) into the
per-layer base adapter with one regularised step.

Pipeline
--------
1. Keep trajectories with ``final_score ≥ quality_threshold``; the rest are
   consumed but only counted.
2. Advantage ``a_t = final_score − baseline`` with ``x_t`` the unit signal
   of the query embedding in the hidden space.
3. Target ``M = mean_t a_t x_t x_tᵀ`` plus the averaged micro drift (queued
   flushes and the live drift handed in by the scheduler).
   Gradients stay factored: ``G_B = s·Aᵀ M``, ``G_A = s·M Bᵀ``.
4. Proximal EWC step per parameter::

       w' = (w + lr·G + 2·lr·λ·F·anchor) / (1 + 2·lr·λ·F)

   which minimises ``−lr⟨G, w⟩ + lr·λ·F·(w − anchor)² + ½(w − w₀)²`` and
   shrinks the movement of important parameters.
5. Commit all layers at once, re-anchor with refreshed importance
   (``version + 1``) and update the baseline EMA.

Failure modes & diagnostics
---------------------------
Any non-finite gradient or weight raises :class:`~sona.errors.Divergence`
before commit.  The cycle is reported as ``failed``; weights, anchor and
baseline are untouched.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import torch

from sona.adapters.base import BaseAdapter
from sona.adapters.lora import LoraPair
from sona.adapters.micro import MicroFlush
from sona.common.vectors import SignalProjection
from sona.config import SonaConfig
from sona.errors import Divergence
from sona.trajectory.types import Trajectory

from .ewc import EwcAnchor, Gradients

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
NOTHING_TO_LEARN = "nothing_to_learn"
BUSY = "busy"
DISABLED = "disabled"

# flushed micro drift kept for the next cycle
_MAX_CARRIES = 16


@dataclass(frozen=True)
class CycleResult:
    """Diagnostics of one consolidation attempt."""

    status: str
    batch_size: int = 0
    eligible: int = 0
    skipped: int = 0
    mean_score: float = 0.0
    step_magnitude: float = 0.0
    ewc_penalty: float = 0.0
    anchor_version: int = 0
    baseline: float = 0.0
    micro_flushes: int = 0
    duration_ms: float = 0.0
    message: str = ""

    @property
    def ran(self) -> bool:
        return self.status == COMPLETED

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


def layer_gradients(
    pair: LoraPair,
    X: torch.Tensor,
    adv: torch.Tensor,
    carries: Sequence[MicroFlush],
) -> Gradients:
    """Factored ascent direction of ``⟨M, s·A B⟩`` for one layer.

    Parameters
    ----------
    pair : LoraPair
        Current layer factors.
    X : torch.Tensor
        Unit signals ``(n, d)``.
    adv : torch.Tensor
        Advantages ``(n,)``.
    carries : sequence of MicroFlush
        Flushed micro deltas averaged into the target.
    """

    G_A = torch.zeros_like(pair.A)
    G_B = torch.zeros_like(pair.B)
    n = X.shape[0]
    if n:
        weighted = adv[:, None] * X
        G_B = G_B + (X @ pair.A).T @ weighted / n
        G_A = G_A + weighted.T @ (X @ pair.B.T) / n
    if carries:
        w = 1.0 / len(carries)
        for carry in carries:
            m = carry.pair
            G_B = G_B + (pair.A.T @ m.A) @ m.B * (m.scale * w)
            G_A = G_A + m.A @ (m.B @ pair.B.T) * (m.scale * w)
    return G_A * pair.scale, G_B * pair.scale


def _signals(batch: Sequence[Trajectory], projection: SignalProjection) -> torch.Tensor:
    if not batch:
        return torch.zeros(0, projection.out_dim, dtype=torch.float32)
    return torch.from_numpy(np.stack([projection(t.query_embedding) for t in batch]))


class Consolidator:
    """Owns the EWC anchor, running baseline and pending micro drift."""

    def __init__(
        self,
        config: SonaConfig,
        base: BaseAdapter,
        *,
        projection: Optional[SignalProjection] = None,
    ) -> None:
        self.config = config
        self.base = base
        self.projection = projection or SignalProjection(
            config.embedding_dim, config.hidden_dim, seed=config.seed + 2
        )
        self.anchor = EwcAnchor.initial(base.snapshot())
        self.baseline = float(config.quality_threshold)
        self._carries: List[MicroFlush] = []
        self._lock = threading.Lock()

    def absorb(self, flush: Optional[MicroFlush]) -> None:
        """Queue flushed micro drift for the next cycle; oldest drops past the cap."""

        if flush is None:
            return
        with self._lock:
            self._carries.append(flush)
            del self._carries[:-_MAX_CARRIES]

    @property
    def pending_flushes(self) -> int:
        with self._lock:
            return len(self._carries)

    # ------------------------------------------------------------------
    def consolidate(self, batch: Sequence[Trajectory], *, drift: Optional[MicroFlush] = None) -> CycleResult:
        """Run one all-or-nothing cycle over ``batch``.

        Parameters
        ----------
        batch : sequence of Trajectory
            Closed trajectories snapshotted from the buffer.
        drift : MicroFlush, optional
            Live micro drift folded in alongside the queued flushes.  It is
            not queued, so a failed cycle leaves it with the micro adapter.

        Returns
        -------
        CycleResult
            ``completed`` or ``failed``; never raises for numeric divergence.
        """

        start = time.perf_counter()
        cfg = self.config
        eligible = [t for t in batch if float(t.final_score) >= cfg.quality_threshold]
        scores = [float(t.final_score) for t in batch]
        with self._lock:
            queued = list(self._carries)
        carries = queued + ([drift] if drift is not None else [])
        common = dict(
            batch_size=len(batch),
            eligible=len(eligible),
            skipped=len(batch) - len(eligible),
            mean_score=float(np.mean(scores)) if scores else 0.0,
            micro_flushes=len(carries),
        )
        layers = self.base.snapshot()
        try:
            new_layers, grads, magnitude, penalty = self._step(layers, eligible, carries)
        except Divergence as exc:
            logger.warning("consolidation aborted: %s", exc)
            return CycleResult(
                status=FAILED,
                anchor_version=self.anchor.version,
                baseline=self.baseline,
                duration_ms=(time.perf_counter() - start) * 1000.0,
                message=str(exc),
                **common,
            )

        self.base.commit(new_layers, expected=layers)
        self.anchor = self.anchor.refreshed(new_layers, grads, cfg.fisher_decay)
        if eligible:
            mean_eligible = float(np.mean([t.final_score for t in eligible]))
            self.baseline = cfg.baseline_decay * self.baseline + (1.0 - cfg.baseline_decay) * mean_eligible
        with self._lock:
            # flushes absorbed during the cycle stay queued
            taken = {id(c) for c in queued}
            self._carries = [c for c in self._carries if id(c) not in taken]
        result = CycleResult(
            status=COMPLETED,
            step_magnitude=magnitude,
            ewc_penalty=penalty,
            anchor_version=self.anchor.version,
            baseline=self.baseline,
            duration_ms=(time.perf_counter() - start) * 1000.0,
            **common,
        )
        logger.info(
            "consolidation cycle %d: batch=%d eligible=%d step=%.3e penalty=%.3e",
            result.anchor_version,
            result.batch_size,
            result.eligible,
            result.step_magnitude,
            result.ewc_penalty,
        )
        return result

    def _step(
        self,
        layers: Tuple[LoraPair, ...],
        eligible: Sequence[Trajectory],
        carries: Sequence[MicroFlush],
    ) -> Tuple[Tuple[LoraPair, ...], List[Gradients], float, float]:
        cfg = self.config
        X = _signals(eligible, self.projection)
        adv = torch.tensor(
            [float(t.final_score) - self.baseline for t in eligible], dtype=torch.float32
        )
        lr = float(cfg.base_lora_lr)
        grads: List[Gradients] = []
        new_layers: List[LoraPair] = []
        sq_step = 0.0
        for idx, (pair, anchor, (f_a, f_b)) in enumerate(
            zip(layers, self.anchor.layers, self.anchor.importance)
        ):
            g_a, g_b = layer_gradients(pair, X, adv, carries)
            if not (torch.isfinite(g_a).all() and torch.isfinite(g_b).all()):
                raise Divergence(f"non-finite gradient in layer {idx}")
            if X.shape[0] == 0 and not carries:
                new = pair
            else:
                k_a = 2.0 * lr * cfg.ewc_lambda * f_a
                k_b = 2.0 * lr * cfg.ewc_lambda * f_b
                A = (pair.A + lr * g_a + k_a * anchor.A) / (1.0 + k_a)
                B = (pair.B + lr * g_b + k_b * anchor.B) / (1.0 + k_b)
                new = pair.with_factors(A, B)
            if not new.is_finite():
                raise Divergence(f"non-finite weights in layer {idx}")
            sq_step += float(((new.A - pair.A) ** 2).sum() + ((new.B - pair.B) ** 2).sum())
            grads.append((g_a, g_b))
            new_layers.append(new)
        penalty = self.anchor.penalty(new_layers, cfg.ewc_lambda)
        magnitude = math.sqrt(sq_step)
        if not (math.isfinite(penalty) and math.isfinite(magnitude)):
            raise Divergence("non-finite step diagnostics")
        return tuple(new_layers), grads, magnitude, penalty


__all__ = [
    "CycleResult",
    "Consolidator",
    "layer_gradients",
    "COMPLETED",
    "FAILED",
    "NOTHING_TO_LEARN",
    "BUSY",
    "DISABLED",
]
