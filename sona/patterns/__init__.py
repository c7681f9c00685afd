# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Pattern memory over trajectory embeddings."""

from .index import FaissIndex, IndexStrategy, NumpyIndex, make_index
from .memory import Pattern, PatternMemory

__all__ = ["Pattern", "PatternMemory", "IndexStrategy", "NumpyIndex", "FaissIndex", "make_index"]
