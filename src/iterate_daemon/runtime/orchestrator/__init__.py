"""Iteration orchestration: worktrees, preview-server processes and lifecycle."""

from .process_manager import ProcessManager
from .service import IterationError, IterationService
from .worktree_manager import WorktreeManager

__all__ = ["IterationError", "IterationService", "ProcessManager", "WorktreeManager"]
