# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Engine configuration.

Summary
-------
``SonaConfig`` is a frozen dataclass validated at construction.  Dynamic,
JSON-shaped input is converted through an OmegaConf structured config so
field types are enforced the same way the training configs are; unknown and
missing keys are rejected explicitly instead of silently defaulted.

Examples
--------
>>> SonaConfig.for_hidden_dim(8).micro_lora_rank
2
>>> SonaConfig.from_mapping({**SonaConfig.for_hidden_dim(8).to_dict(), "seed": 3}).seed
3
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, Mapping, Tuple

from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .errors import InvalidInput

INDEX_BACKENDS = ("numpy", "faiss")
# field annotations are strings under postponed evaluation
_NUMERIC_TYPES = ("int", "float", int, float)


@dataclass(frozen=True)
class SonaConfig:
    """Static parameters of the adaptive learning core."""

    # Boundary fields, all required
    hidden_dim: int
    embedding_dim: int
    micro_lora_rank: int
    base_lora_rank: int
    micro_lora_lr: float
    base_lora_lr: float
    ewc_lambda: float
    pattern_clusters: int
    trajectory_capacity: int
    quality_threshold: float

    # Engine tuning, optional
    num_layers: int = 4
    cluster_radius: float = 0.5
    background_interval_s: float = 3600.0
    batch_size: int = 64
    micro_flush_decay: float = 0.5
    baseline_decay: float = 0.9
    fisher_decay: float = 0.9
    lora_alpha: float = 1.0
    seed: int = 0
    index_backend: str = "numpy"

    REQUIRED: ClassVar[Tuple[str, ...]] = (
        "hidden_dim",
        "embedding_dim",
        "micro_lora_rank",
        "base_lora_rank",
        "micro_lora_lr",
        "base_lora_lr",
        "ewc_lambda",
        "pattern_clusters",
        "trajectory_capacity",
        "quality_threshold",
    )

    def __post_init__(self) -> None:
        for name in (
            "hidden_dim",
            "embedding_dim",
            "micro_lora_rank",
            "base_lora_rank",
            "pattern_clusters",
            "trajectory_capacity",
            "num_layers",
            "batch_size",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidInput(f"{name} must be a positive integer, got {value!r}")
        for name in ("micro_lora_lr", "base_lora_lr", "ewc_lambda", "cluster_radius"):
            value = getattr(self, name)
            if not _is_real(value) or value < 0:
                raise InvalidInput(f"{name} must be a non-negative real, got {value!r}")
        if not _is_real(self.background_interval_s) or self.background_interval_s <= 0:
            raise InvalidInput("background_interval_s must be positive")
        if not _is_real(self.lora_alpha) or self.lora_alpha <= 0:
            raise InvalidInput("lora_alpha must be positive")
        for name in ("quality_threshold", "micro_flush_decay", "baseline_decay", "fisher_decay"):
            value = getattr(self, name)
            if not _is_real(value) or not 0.0 <= value <= 1.0:
                raise InvalidInput(f"{name} must lie in [0, 1], got {value!r}")
        if self.micro_lora_rank >= self.base_lora_rank:
            raise InvalidInput("micro_lora_rank must be smaller than base_lora_rank")
        if self.micro_lora_rank > self.hidden_dim or self.base_lora_rank > self.hidden_dim:
            raise InvalidInput("LoRA ranks must not exceed hidden_dim")
        if isinstance(self.seed, bool) or not isinstance(self.seed, int) or self.seed < 0:
            raise InvalidInput("seed must be a non-negative integer")
        if self.index_backend not in INDEX_BACKENDS:
            raise InvalidInput(f"index_backend must be one of {INDEX_BACKENDS}")

    # ------------------------------------------------------------------
    @classmethod
    def for_hidden_dim(cls, hidden_dim: int) -> "SonaConfig":
        """Return the default configuration for ``hidden_dim``."""

        base_rank = min(16, hidden_dim)
        return cls(
            hidden_dim=hidden_dim,
            embedding_dim=hidden_dim,
            micro_lora_rank=min(2, base_rank - 1),
            base_lora_rank=base_rank,
            micro_lora_lr=0.001,
            base_lora_lr=0.0001,
            ewc_lambda=1000.0,
            pattern_clusters=128,
            trajectory_capacity=10000,
            quality_threshold=0.6,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | DictConfig) -> "SonaConfig":
        """Build a config from a dict-like object.

        Parameters
        ----------
        data : Mapping or DictConfig
            Field values keyed by name.

        Returns
        -------
        SonaConfig
            Validated configuration.

        Raises
        ------
        InvalidInput
            On unknown keys, missing required keys or badly typed values.
        """

        if isinstance(data, DictConfig):
            data = OmegaConf.to_container(data, resolve=True)  # type: ignore[assignment]
        if not isinstance(data, Mapping):
            raise InvalidInput(f"configuration must be a mapping, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidInput(f"unknown configuration fields: {', '.join(unknown)}")
        missing = [name for name in cls.REQUIRED if name not in data]
        if missing:
            raise InvalidInput(f"missing configuration fields: {', '.join(missing)}")
        # OmegaConf would coerce "0.6" to 0.6 during the merge
        for f in fields(cls):
            value = data.get(f.name)
            if f.type in _NUMERIC_TYPES and isinstance(value, (str, bytes, bool)):
                raise InvalidInput(f"{f.name} must be numeric, got {value!r}")

        schema = OmegaConf.structured(cls)
        OmegaConf.set_readonly(schema, False)
        try:
            merged = OmegaConf.merge(schema, dict(data))
            values: Dict[str, Any] = OmegaConf.to_container(merged, resolve=True)  # type: ignore[assignment]
        except OmegaConfBaseException as exc:
            raise InvalidInput(f"invalid configuration: {exc}") from exc
        return cls(**values)

    @classmethod
    def from_json(cls, text: str) -> "SonaConfig":
        """Parse a JSON object string into a config."""

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidInput(f"configuration is not valid JSON: {exc}") from exc
        return cls.from_mapping(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def micro_scale(self) -> float:
        return self.lora_alpha / self.micro_lora_rank

    @property
    def base_scale(self) -> float:
        return self.lora_alpha / self.base_lora_rank


def _is_real(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


__all__ = ["SonaConfig", "INDEX_BACKENDS"]
