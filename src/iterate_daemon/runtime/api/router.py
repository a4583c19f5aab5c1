"""Assemble the ``/api`` router from its route groups."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from .deps import RouteDeps
from .routes_annotations import register_annotation_routes
from .routes_iterations import register_iteration_routes


def create_router(deps: RouteDeps) -> APIRouter:
    """Build the API router bound to one daemon's store and service."""
    router = APIRouter(prefix="/api")

    register_iteration_routes(router, deps)
    register_annotation_routes(router, deps)

    @router.get("/state")
    async def get_state() -> dict[str, Any]:
        """Return the same snapshot a new websocket client receives."""
        return deps.store.get_state()

    return router
