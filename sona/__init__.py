# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Online low-rank continual adaptation core."""

from sona.config import SonaConfig
from sona.consolidation.trainer import CycleResult
from sona.engine import SonaEngine, TrajectoryOutcome
from sona.errors import (
    Disabled,
    Divergence,
    InvalidInput,
    InvalidState,
    NotFound,
    OutOfRange,
    SonaError,
)
from sona.stats import EngineStats

__all__ = [
    "__version__",
    "SonaEngine",
    "SonaConfig",
    "TrajectoryOutcome",
    "CycleResult",
    "EngineStats",
    "SonaError",
    "InvalidInput",
    "NotFound",
    "InvalidState",
    "OutOfRange",
    "Divergence",
    "Disabled",
]
__version__ = "0.1.0"
