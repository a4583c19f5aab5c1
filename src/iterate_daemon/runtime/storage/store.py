"""In-memory authoritative state for the daemon."""

from __future__ import annotations

from typing import Any, Optional

from ...config import IterateConfig
from ..domain.models import CommandContext, IterationInfo


class IterationStore:
    """Hold configuration, iterations, annotations, DOM changes and command contexts.

    Every method is synchronous and applies completely before returning, so
    callers on the event loop never observe a half-applied mutation. List and
    map getters return shallow copies; records themselves are shared.
    """

    def __init__(self, config: IterateConfig) -> None:
        self._config = config
        self._iterations: dict[str, IterationInfo] = {}
        self._annotations: list[dict[str, Any]] = []
        self._dom_changes: list[dict[str, Any]] = []
        self._commands: dict[str, CommandContext] = {}

    @property
    def config(self) -> IterateConfig:
        return self._config

    def get_state(self) -> dict[str, Any]:
        """Build the full snapshot sent to newly connected clients."""
        return {
            "config": self._config.to_dict(),
            "iterations": {name: info.to_dict() for name, info in self._iterations.items()},
            "annotations": [dict(a) for a in self._annotations],
            "domChanges": [dict(c) for c in self._dom_changes],
        }

    # Iterations

    def get_iterations(self) -> dict[str, IterationInfo]:
        return dict(self._iterations)

    def get_iteration(self, name: str) -> Optional[IterationInfo]:
        return self._iterations.get(name)

    def set_iteration(self, info: IterationInfo) -> None:
        self._iterations[info.name] = info

    def remove_iteration(self, name: str) -> bool:
        return self._iterations.pop(name, None) is not None

    # Annotations

    def get_annotations(self) -> list[dict[str, Any]]:
        return list(self._annotations)

    def get_annotation(self, annotation_id: str) -> Optional[dict[str, Any]]:
        for annotation in self._annotations:
            if annotation.get("id") == annotation_id:
                return annotation
        return None

    def get_annotations_by_status(self, status: str) -> list[dict[str, Any]]:
        return [a for a in self._annotations if a.get("status") == status]

    def get_pending_annotations(self) -> list[dict[str, Any]]:
        return self.get_annotations_by_status("pending")

    def add_annotation(self, annotation: dict[str, Any]) -> None:
        self._annotations.append(annotation)

    def update_annotation(self, annotation_id: str, updates: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Merge ``updates`` into an annotation; the id is never changed."""
        annotation = self.get_annotation(annotation_id)
        if annotation is None:
            return None
        annotation.update({k: v for k, v in updates.items() if k != "id"})
        return annotation

    def remove_annotation(self, annotation_id: str) -> bool:
        for idx, annotation in enumerate(self._annotations):
            if annotation.get("id") == annotation_id:
                del self._annotations[idx]
                return True
        return False

    # DOM changes

    def get_dom_changes(self) -> list[dict[str, Any]]:
        return list(self._dom_changes)

    def add_dom_change(self, change: dict[str, Any]) -> None:
        self._dom_changes.append(change)

    def clear_dom_changes(self) -> None:
        self._dom_changes = []

    # Command contexts

    def set_command_context(self, context: CommandContext) -> None:
        self._commands[context.command_id] = context

    def get_command_context(self, command_id: str) -> Optional[CommandContext]:
        return self._commands.get(command_id)

    def get_command_contexts(self) -> list[CommandContext]:
        return list(self._commands.values())

    def get_latest_command_context(self) -> Optional[CommandContext]:
        """Most recently created context; later insertion wins a timestamp tie."""
        if not self._commands:
            return None
        _, latest = max(enumerate(self._commands.values()), key=lambda item: (item[1].created_at, item[0]))
        return latest
