# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Elastic weight consolidation anchor.

Summary
-------
Snapshot of the base factors plus a per-parameter importance in ``[0, 1]``.
Importance is an exponential moving average of squared consolidation
gradients normalised by their maximum, a cheap Fisher-information proxy.
The anchor is immutable; every successful cycle produces a new one with
``version + 1``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import torch

from sona.adapters.lora import LoraPair

Importance = Tuple[torch.Tensor, torch.Tensor]
Gradients = Tuple[torch.Tensor, torch.Tensor]


@dataclass(frozen=True)
class EwcAnchor:
    """Anchored base weights with per-parameter importance."""

    layers: Tuple[LoraPair, ...]
    importance: Tuple[Importance, ...]
    version: int = 0

    @classmethod
    def initial(cls, layers: Sequence[LoraPair]) -> "EwcAnchor":
        """Anchor on ``layers`` with zero importance, i.e. no penalty yet."""

        importance = tuple((torch.zeros_like(p.A), torch.zeros_like(p.B)) for p in layers)
        return cls(tuple(layers), importance, 0)

    def penalty(self, layers: Sequence[LoraPair], ewc_lambda: float) -> float:
        """``λ Σ F (w − anchor)²`` over all layers."""

        total = 0.0
        for pair, anchor, (f_a, f_b) in zip(layers, self.layers, self.importance):
            total += float((f_a * (pair.A - anchor.A) ** 2).sum())
            total += float((f_b * (pair.B - anchor.B) ** 2).sum())
        return ewc_lambda * total

    def refreshed(self, layers: Sequence[LoraPair], grads: Sequence[Gradients], decay: float) -> "EwcAnchor":
        """Return the next anchor on ``layers`` with importance updated from ``grads``."""

        peak = 0.0
        for g_a, g_b in grads:
            peak = max(peak, float((g_a**2).max()), float((g_b**2).max()))
        importance = []
        for (f_a, f_b), (g_a, g_b) in zip(self.importance, grads):
            if peak > 0.0:
                f_a = decay * f_a + (1.0 - decay) * g_a**2 / peak
                f_b = decay * f_b + (1.0 - decay) * g_b**2 / peak
            else:
                f_a = decay * f_a
                f_b = decay * f_b
            importance.append((f_a, f_b))
        return EwcAnchor(tuple(layers), tuple(importance), self.version + 1)


__all__ = ["EwcAnchor", "Importance", "Gradients"]
