"""Domain models for iteration runtime state."""

from .models import CommandContext, IterationInfo

__all__ = [
    "IterationInfo",
    "CommandContext",
]
