"""In-memory state container."""

from .store import IterationStore

__all__ = ["IterationStore"]
