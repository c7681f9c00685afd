# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Read-only engine statistics."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Optional

from sona.consolidation.trainer import CycleResult


@dataclass(frozen=True)
class EngineStats:
    """Point-in-time counters of a :class:`~sona.engine.SonaEngine`."""

    trajectories_buffered: int
    trajectories_consumed: int
    trajectories_dropped: int
    trajectories_open: int
    patterns_stored: int
    micro_updates: int
    micro_pending: int
    cycles_run: int
    cycles_failed: int
    anchor_version: int
    scheduler_state: str
    enabled: bool
    last_cycle: Optional[CycleResult] = None

    @property
    def patterns_learned(self) -> int:
        return self.patterns_stored

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_cycle"] = self.last_cycle.to_dict() if self.last_cycle is not None else None
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


__all__ = ["EngineStats"]
