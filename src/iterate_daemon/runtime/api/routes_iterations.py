"""Iteration and command route registration for the daemon API."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException

from ..orchestrator.service import IterationError
from ..orchestrator.worktree_manager import WorktreeError
from .deps import RouteDeps
from .schemas import CommandRequest, CreateIterationRequest, PickIterationRequest


def _http_error(exc: IterationError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def register_iteration_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register iteration lifecycle, worktree and command routes."""
    @router.get("/iterations")
    async def list_iterations() -> dict[str, Any]:
        """Return every iteration keyed by name."""
        return {name: info.to_dict() for name, info in deps.store.get_iterations().items()}

    @router.post("/iterations")
    async def create_iteration(body: CreateIterationRequest) -> dict[str, Any]:
        """Create a worktree, install dependencies and start the preview server.

        Args:
            body: Iteration name and optional base branch.

        Returns:
            The ready iteration record.

        Raises:
            HTTPException: 400 invalid name, 409 duplicate, 429 at capacity,
                500 when a worktree, install or spawn step fails.
        """
        try:
            info = await deps.service.create_iteration(body.name, body.base_branch)
        except IterationError as exc:
            raise _http_error(exc)
        return info.to_dict()

    # Registered before the ``{name}`` routes so "pick" is never read as a name.
    @router.post("/iterations/pick")
    async def pick_iteration(body: PickIterationRequest) -> dict[str, Any]:
        """Merge the chosen iteration into the base branch and remove all iterations.

        Args:
            body: Winner name and merge strategy.

        Returns:
            ``{"ok": True, "merged": name}`` on success.

        Raises:
            HTTPException: 404 for unknown names, 500 when the merge fails
                (the repository has already been rolled back).
        """
        try:
            return await deps.service.pick(body.name, body.strategy)
        except IterationError as exc:
            raise _http_error(exc)

    @router.delete("/iterations/{name}")
    async def delete_iteration(name: str) -> dict[str, Any]:
        """Stop and remove one iteration."""
        try:
            await deps.service.remove_iteration(name)
        except IterationError as exc:
            raise _http_error(exc)
        return {"ok": True}

    @router.get("/worktrees")
    async def list_worktrees() -> list[dict[str, Any]]:
        """List iteration worktrees known to git."""
        try:
            entries = await asyncio.to_thread(deps.service.worktrees.list)
        except WorktreeError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        return [{"path": e.path, "branch": e.branch, "head": e.head} for e in entries]

    @router.post("/command")
    async def run_command(body: CommandRequest) -> dict[str, Any]:
        """Spawn ``count`` variations that share one command context."""
        try:
            return await deps.service.run_command(body.command, body.prompt, body.count, body.base_branch)
        except IterationError as exc:
            raise _http_error(exc)

    @router.get("/command/latest")
    async def latest_command() -> dict[str, Any]:
        context = deps.store.get_latest_command_context()
        if context is None:
            raise HTTPException(status_code=404, detail="No command has been run")
        return context.to_dict()

    @router.get("/command/{command_id}")
    async def get_command(command_id: str) -> dict[str, Any]:
        context = deps.store.get_command_context(command_id)
        if context is None:
            raise HTTPException(status_code=404, detail=f'Command "{command_id}" not found')
        return context.to_dict()
