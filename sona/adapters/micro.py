# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Algorithm Card: Micro-Adapter

Summary
-------
Single global rank-``r_micro`` LoRA pair applied on every inference call and
updated immediately from each accepted trajectory.

Pipeline
--------
1. ``x`` = unit signal of the query embedding (see
   :class:`~sona.common.vectors.SignalProjection`); never zero.
2. ``c = micro_lr · (final_score + δ)`` with a small floor ``δ``; ``h = x A``.
3. ``B ← B + (c / scale) · h xᵀ / (‖h‖² + ε)`` moves the output for ``x``
   towards ``x`` by ``c``.
4. ``A ← A + c · (x − A h) hᵀ`` (Oja subspace rule keeps ``A`` bounded).
5. ``drift`` copies the current factors for consolidation; ``settle`` scales
   ``B`` by ``micro_flush_decay`` once the cycle committed.  ``flush`` does
   both at once.

Contracts
---------
``apply`` is lock-free and reads one immutable pair.  Updates serialize on a
writer lock.  Every accepted trajectory moves the weights unless
``micro_lr`` is zero.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch

from sona.common.vectors import SignalProjection
from sona.trajectory.types import Trajectory

from .lora import LoraPair

logger = logging.getLogger(__name__)

_EPS = 1e-8
# keeps c > 0 for an accepted trajectory scored 0
_SIGNAL_FLOOR = 1e-3


@dataclass(frozen=True)
class MicroFlush:
    """Micro factors handed to the next consolidation cycle."""

    pair: LoraPair
    updates: int


class MicroAdapter:
    """Fast, per-trajectory low-rank delta."""

    def __init__(
        self,
        dim: int,
        rank: int,
        lr: float,
        *,
        scale: float = 1.0,
        flush_decay: float = 0.5,
        seed: int = 0,
        projection: Optional[SignalProjection] = None,
    ) -> None:
        gen = torch.Generator().manual_seed(seed)
        self.dim = dim
        self.rank = rank
        self.lr = float(lr)
        self.flush_decay = float(flush_decay)
        self.projection = projection or SignalProjection(dim, dim)
        if self.projection.out_dim != dim:
            raise ValueError("projection must map onto the adapter's hidden size")
        self._pair = LoraPair.init(dim, rank, scale, gen)
        self._write_lock = threading.Lock()
        self._pending = 0
        self.update_count = 0

    def weights(self) -> LoraPair:
        """Current immutable factor pair."""

        return self._pair

    def apply(self, x: np.ndarray) -> np.ndarray:
        return self._pair.forward(x)

    def update(self, trajectory: Trajectory) -> bool:
        """Reinforce ``trajectory``'s query direction; return whether weights moved."""

        if trajectory.final_score is None:
            raise ValueError(f"trajectory {trajectory.id} is still open")
        c = self.lr * (float(trajectory.final_score) + _SIGNAL_FLOOR)
        if c == 0.0:
            return False
        x = torch.from_numpy(self.projection(trajectory.query_embedding))
        with self._write_lock:
            pair = self._pair
            h = x @ pair.A
            B = pair.B + torch.outer(h, x) * (c / (pair.scale * (float(h @ h) + _EPS)))
            A = pair.A + torch.outer(x - pair.A @ h, h) * c
            new = pair.with_factors(A, B)
            if not new.is_finite():
                logger.warning("micro update for trajectory %d produced non-finite weights; skipped", trajectory.id)
                return False
            self._pair = new
            self._pending += 1
            self.update_count += 1
        return True

    def drift(self) -> Optional[MicroFlush]:
        """Copy of the accumulated drift, leaving the live weights untouched.

        Returns ``None`` when no update happened since the last settle.
        """

        with self._write_lock:
            if self._pending == 0:
                return None
            return MicroFlush(pair=self._pair.clone(), updates=self._pending)

    def settle(self, drift: MicroFlush) -> None:
        """Mark ``drift`` as consolidated and dampen ``B``."""

        with self._write_lock:
            self._settle(drift.updates)

    def flush(self) -> Optional[MicroFlush]:
        """Hand accumulated drift to consolidation and dampen ``B``.

        Returns ``None`` when no update happened since the last flush.
        """

        with self._write_lock:
            if self._pending == 0:
                return None
            flushed = MicroFlush(pair=self._pair.clone(), updates=self._pending)
            self._settle(flushed.updates)
        logger.debug("micro adapter flushed %d updates", flushed.updates)
        return flushed

    def _settle(self, updates: int) -> None:
        pair = self._pair
        self._pair = pair.with_factors(pair.A, pair.B * self.flush_decay)
        self._pending = max(0, self._pending - updates)

    @property
    def pending_updates(self) -> int:
        return self._pending


__all__ = ["MicroAdapter", "MicroFlush"]
