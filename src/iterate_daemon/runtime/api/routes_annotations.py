"""Annotation and DOM-change route registration."""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query

from ..orchestrator.service import IterationError
from .deps import RouteDeps

_ACTION_STATUS: dict[str, str] = {
    "acknowledge": "acknowledged",
    "resolve": "resolved",
    "dismiss": "dismissed",
}


def register_annotation_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register annotation listing, status transitions and DOM-change routes."""
    @router.get("/annotations")
    async def list_annotations(status: Optional[str] = Query(None)) -> list[dict[str, Any]]:
        """Return all annotations, optionally only those with ``status``."""
        if status:
            return deps.store.get_annotations_by_status(status)
        return deps.store.get_annotations()

    @router.get("/annotations/pending")
    async def list_pending_annotations() -> list[dict[str, Any]]:
        return deps.store.get_pending_annotations()

    @router.patch("/annotations/{annotation_id}/{action}")
    async def update_annotation_status(
        annotation_id: str,
        action: Literal["acknowledge", "resolve", "dismiss"],
    ) -> dict[str, Any]:
        """Move an annotation to acknowledged, resolved or dismissed.

        Args:
            annotation_id: Identifier assigned when the annotation was created.
            action: One of ``acknowledge``, ``resolve`` or ``dismiss``.

        Returns:
            The updated annotation, also broadcast as ``annotation:updated``.

        Raises:
            HTTPException: If the annotation does not exist.
        """
        try:
            return await deps.service.set_annotation_status(annotation_id, _ACTION_STATUS[action])
        except IterationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc))

    @router.get("/dom-changes")
    async def list_dom_changes() -> list[dict[str, Any]]:
        return deps.store.get_dom_changes()

    @router.delete("/dom-changes")
    async def clear_dom_changes() -> dict[str, Any]:
        deps.store.clear_dom_changes()
        return {"ok": True}
