# Copyright (c) 2025 Arne Deutsch, itemis AG, MIT License
"""Exception taxonomy for the adaptive learning core.

Each error also derives from the closest built-in exception so callers that
only know about ``ValueError`` or ``KeyError`` keep working.
"""

from __future__ import annotations


class SonaError(Exception):
    """Base class for all engine errors."""


class InvalidInput(SonaError, ValueError):
    """Malformed dimensions, out-of-range scores or bad configuration."""


class NotFound(SonaError, KeyError):
    """Unknown trajectory id."""

    def __str__(self) -> str:  # KeyError quotes its argument
        return Exception.__str__(self)


class InvalidState(SonaError, RuntimeError):
    """Operation on a trajectory that is already closed."""


class OutOfRange(SonaError, IndexError):
    """Layer index outside the configured layer count."""


class Divergence(SonaError, ArithmeticError):
    """Non-finite values produced during consolidation."""


class Disabled(SonaError, RuntimeError):
    """Operation attempted while the engine is disabled."""


__all__ = [
    "SonaError",
    "InvalidInput",
    "NotFound",
    "InvalidState",
    "OutOfRange",
    "Divergence",
    "Disabled",
]
