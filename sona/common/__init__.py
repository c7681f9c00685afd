# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Shared helpers: locking and vector coercion."""

from .locks import ReadWriteLock
from .vectors import SignalProjection, VectorLike, as_vector, unit

__all__ = [
    "ReadWriteLock",
    "VectorLike",
    "as_vector",
    "SignalProjection",
    "unit",
]
