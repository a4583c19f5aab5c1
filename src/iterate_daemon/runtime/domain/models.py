"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast


IterationStatus = Literal[
    "creating",
    "installing",
    "starting",
    "ready",
    "error",
    "stopped",
]

AnnotationStatus = Literal["pending", "acknowledged", "resolved", "dismissed"]
PickStrategy = Literal["merge", "squash", "rebase"]

_VALID_ITERATION_STATUSES = {"creating", "installing", "starting", "ready", "error", "stopped"}
VALID_ANNOTATION_STATUSES = {"pending", "acknowledged", "resolved", "dismissed"}

BRANCH_PREFIX = "iterate/"
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Get the current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def is_valid_name(name: str) -> bool:
    """Return whether ``name`` is usable as an iteration name."""
    return bool(NAME_PATTERN.match(name or ""))


def branch_for(name: str) -> str:
    return f"{BRANCH_PREFIX}{name}"


@dataclass
class IterationInfo:
    """One isolated branch, worktree and preview server."""
    name: str
    branch: str = ""
    worktree_path: str = ""
    port: int = 0
    pid: Optional[int] = None
    status: IterationStatus = "creating"
    created_at: str = field(default_factory=now_iso)
    command_prompt: Optional[str] = None
    command_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.branch:
            self.branch = branch_for(self.name)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase shape sent to clients."""
        data: dict[str, Any] = {
            "name": self.name,
            "branch": self.branch,
            "worktreePath": self.worktree_path,
            "port": self.port,
            "pid": self.pid,
            "status": self.status,
            "createdAt": self.created_at,
        }
        if self.command_prompt is not None:
            data["commandPrompt"] = self.command_prompt
        if self.command_id is not None:
            data["commandId"] = self.command_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationInfo":
        """Deserialize an iteration from its wire shape."""
        status = str(data.get("status") or "creating")
        if status not in _VALID_ITERATION_STATUSES:
            status = "error"
        raw_pid = data.get("pid")
        try:
            pid = int(raw_pid) if raw_pid is not None else None
        except (TypeError, ValueError):
            pid = None
        return cls(
            name=str(data.get("name") or ""),
            branch=str(data.get("branch") or ""),
            worktree_path=str(data.get("worktreePath") or ""),
            port=int(data.get("port") or 0),
            pid=pid,
            status=cast(IterationStatus, status),
            created_at=str(data.get("createdAt") or now_iso()),
            command_prompt=data.get("commandPrompt"),
            command_id=data.get("commandId"),
        )


@dataclass
class CommandContext:
    """Prompt and iteration set recorded for one "make N variations" request."""
    command_id: str = field(default_factory=new_id)
    prompt: str = ""
    iterations: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commandId": self.command_id,
            "prompt": self.prompt,
            "iterations": list(self.iterations),
            "createdAt": self.created_at,
        }


def build_annotation(payload: dict[str, Any]) -> dict[str, Any]:
    """Stamp a client-submitted annotation with server-owned fields.

    Client-provided ``id``, ``timestamp`` and ``status`` are overwritten; the
    rest of the payload is stored untouched.
    """
    return {**payload, "id": new_id(), "timestamp": now_ms(), "status": "pending"}


def build_dom_change(
    *,
    iteration: str,
    selector: str,
    change_type: str,
    before: dict[str, Any],
    after: dict[str, Any],
) -> dict[str, Any]:
    """Create a DOM change record with a server-assigned id and timestamp."""
    return {
        "id": new_id(),
        "iteration": iteration,
        "selector": selector,
        "type": change_type,
        "componentName": None,
        "sourceLocation": None,
        "before": before,
        "after": after,
        "timestamp": now_ms(),
    }
