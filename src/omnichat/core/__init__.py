"""Core primitives used throughout the engine."""

from .cancellation import CancellationCallback, CancellationError, CancellationToken

__all__ = ["CancellationCallback", "CancellationError", "CancellationToken"]
