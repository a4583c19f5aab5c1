"""Iteration orchestration daemon: worktrees, preview servers, proxy and live state."""

__version__ = "0.1.0"
