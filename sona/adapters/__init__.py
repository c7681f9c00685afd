# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Low-rank adapters: fast micro tier and consolidated base tier."""

from .base import BaseAdapter
from .lora import LoraPair
from .micro import MicroAdapter, MicroFlush

__all__ = ["LoraPair", "MicroAdapter", "MicroFlush", "BaseAdapter"]
