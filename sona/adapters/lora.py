# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Low-rank factor pair shared by the micro and base adapters.

A ``LoraPair`` is immutable: updates build a new pair and the owning adapter
swaps its reference, so a reader holding a pair always sees factors that
belong together.  This mirrors ``LoraLinear`` where ``A`` has shape
``(in_features, r)`` and ``B`` has shape ``(r, out_features)``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import torch


@dataclass(frozen=True)
class LoraPair:
    """Factors ``A (d, r)`` and ``B (r, d)`` with output scaling."""

    A: torch.Tensor
    B: torch.Tensor
    scale: float

    @classmethod
    def init(cls, dim: int, rank: int, scale: float, generator: torch.Generator) -> "LoraPair":
        """Random ``A`` and zero ``B`` so the initial delta is exactly zero."""

        A = torch.randn(dim, rank, generator=generator, dtype=torch.float32) / math.sqrt(dim)
        B = torch.zeros(rank, dim, dtype=torch.float32)
        return cls(A, B, scale)

    @property
    def dim(self) -> int:
        return int(self.A.shape[0])

    @property
    def rank(self) -> int:
        return int(self.A.shape[1])

    def delta(self, x: torch.Tensor) -> torch.Tensor:
        return (x @ self.A) @ self.B * self.scale

    def forward(self, x: np.ndarray) -> np.ndarray:
        """Return ``x + scale * (x A) B`` for a 1-D input."""

        t = torch.from_numpy(np.ascontiguousarray(x, dtype=np.float32))
        return (t + self.delta(t)).numpy()

    def with_factors(self, A: torch.Tensor, B: torch.Tensor) -> "LoraPair":
        if A.shape != self.A.shape or B.shape != self.B.shape:
            raise ValueError("LoRA factor shapes are fixed at construction")
        return LoraPair(A.contiguous(), B.contiguous(), self.scale)

    def is_finite(self) -> bool:
        return bool(torch.isfinite(self.A).all() and torch.isfinite(self.B).all())

    def dense(self) -> torch.Tensor:
        """Full ``(d, d)`` delta, mainly for diagnostics and tests."""

        return self.A @ self.B * self.scale

    def clone(self) -> "LoraPair":
        return LoraPair(self.A.clone(), self.B.clone(), self.scale)

    def equals(self, other: "LoraPair") -> bool:
        """Bit-for-bit comparison of both factors."""

        return bool(torch.equal(self.A, other.A) and torch.equal(self.B, other.B))


__all__ = ["LoraPair"]
