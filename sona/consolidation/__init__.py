# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Consolidation of buffered trajectories into the base adapter."""

from .ewc import EwcAnchor
from .scheduler import LearningScheduler, SchedulerState
from .trainer import Consolidator, CycleResult, layer_gradients
from .worker import BackgroundLearner

__all__ = [
    "BackgroundLearner",
    "Consolidator",
    "CycleResult",
    "EwcAnchor",
    "LearningScheduler",
    "SchedulerState",
    "layer_gradients",
]
