# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Trajectory recording and buffering."""

from .buffer import TrajectoryBuffer
from .recorder import TrajectoryRecorder, check_score
from .types import Trajectory, TrajectoryStep

__all__ = ["Trajectory", "TrajectoryStep", "TrajectoryRecorder", "TrajectoryBuffer", "check_score"]
