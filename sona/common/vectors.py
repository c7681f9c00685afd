# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Vector coercion helpers shared by the recorder, pattern memory and adapters."""

from __future__ import annotations

import math
from typing import Optional, Sequence, Union

import numpy as np
import torch

from sona.errors import InvalidInput

VectorLike = Union[Sequence[float], np.ndarray, torch.Tensor]


def as_vector(values: VectorLike, dim: int, *, name: str = "vector") -> np.ndarray:
    """Return ``values`` as a finite ``float32`` array of shape ``(dim,)``.

    Raises
    ------
    InvalidInput
        If the input is not one-dimensional, has the wrong length or holds
        NaN/inf entries.
    """

    if isinstance(values, torch.Tensor):
        values = values.detach().cpu().numpy()
    try:
        arr = np.asarray(values, dtype="float32")
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{name} is not numeric: {exc}") from exc
    if arr.ndim != 1:
        raise InvalidInput(f"{name} must be one-dimensional, got shape {arr.shape}")
    if arr.shape[0] != dim:
        raise InvalidInput(f"{name} has length {arr.shape[0]}, expected {dim}")
    if not np.all(np.isfinite(arr)):
        raise InvalidInput(f"{name} contains non-finite values")
    return arr


def unit(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """L2-normalise ``vec``; zero vectors stay zero."""

    norm = float(np.linalg.norm(vec))
    if norm < eps:
        return np.zeros_like(vec)
    return vec / norm


class SignalProjection:
    """Map query embeddings onto unit learning signals in the hidden space.

    Summary
    -------
    Equal sizes pass through unchanged.  Otherwise a fixed Gaussian matrix
    ``(in_dim, out_dim)``, drawn once from ``seed``, projects the embedding,
    so no part of it is cut away.  An embedding whose projection vanishes
    maps to the constant direction ``1/sqrt(out_dim)``; every embedding
    therefore yields a non-zero signal.

    Examples
    --------
    >>> bool(np.any(SignalProjection(3, 3)([0.0, 0.0, 0.0])))
    True
    """

    def __init__(self, in_dim: int, out_dim: int, *, seed: int = 0) -> None:
        self.in_dim = in_dim
        self.out_dim = out_dim
        self.matrix: Optional[np.ndarray] = None
        if in_dim != out_dim:
            gen = torch.Generator().manual_seed(seed)
            self.matrix = (torch.randn(in_dim, out_dim, generator=gen) / math.sqrt(out_dim)).numpy()
        self.fallback = np.full(out_dim, 1.0 / math.sqrt(out_dim), dtype="float32")

    def __call__(self, embedding: VectorLike) -> np.ndarray:
        vec = as_vector(embedding, self.in_dim, name="query_embedding")
        if self.matrix is not None:
            vec = vec @ self.matrix
        signal = unit(vec)
        if not np.any(signal):
            return self.fallback.copy()
        return signal.astype("float32")


__all__ = ["VectorLike", "SignalProjection", "as_vector", "unit"]
