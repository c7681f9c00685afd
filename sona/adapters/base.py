# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Per-layer base adapter holding the consolidated low-rank deltas."""

from __future__ import annotations

import logging
import threading
from typing import Tuple

import numpy as np
import torch

from sona.errors import OutOfRange

from .lora import LoraPair

logger = logging.getLogger(__name__)


class BaseAdapter:
    """Rank-``r_base`` LoRA pair per target layer.

    Summary
    -------
    Layers are stored as one immutable tuple.  :meth:`commit` swaps the
    whole tuple, so ``apply`` on any layer always observes weights from a
    single consolidation cycle.
    """

    def __init__(self, dim: int, rank: int, num_layers: int, *, scale: float = 1.0, seed: int = 0) -> None:
        gen = torch.Generator().manual_seed(seed + 1)
        self.dim = dim
        self.rank = rank
        self.num_layers = num_layers
        self._layers: Tuple[LoraPair, ...] = tuple(
            LoraPair.init(dim, rank, scale, gen) for _ in range(num_layers)
        )
        self._commit_lock = threading.Lock()
        self.version = 0

    def snapshot(self) -> Tuple[LoraPair, ...]:
        return self._layers

    def layer(self, index: int) -> LoraPair:
        if isinstance(index, bool) or not 0 <= int(index) < self.num_layers:
            raise OutOfRange(f"layer {index} outside [0, {self.num_layers})")
        return self._layers[int(index)]

    def apply(self, index: int, x: np.ndarray) -> np.ndarray:
        return self.layer(index).forward(x)

    def commit(self, layers: Tuple[LoraPair, ...], *, expected: Tuple[LoraPair, ...] | None = None) -> None:
        """Replace all layers at once.

        ``expected`` guards against committing on top of weights that changed
        since the caller took its snapshot.
        """

        if len(layers) != self.num_layers:
            raise ValueError("layer count is fixed at construction")
        with self._commit_lock:
            if expected is not None and self._layers is not expected:
                raise RuntimeError("base adapter changed during consolidation")
            self._layers = tuple(layers)
            self.version += 1
        logger.debug("base adapter committed version %d", self.version)


__all__ = ["BaseAdapter"]
