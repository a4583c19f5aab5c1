"""Iteration lifecycle: create, supervise, remove and pick."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, cast

from ...config import IterateConfig, build_dev_command, install_command
from ..domain.models import (
    VALID_ANNOTATION_STATUSES,
    CommandContext,
    IterationInfo,
    IterationStatus,
    PickStrategy,
    is_valid_name,
    new_id,
)
from ..events.ws import WebSocketHub
from ..storage.store import IterationStore
from .process_manager import ProcessExit, ProcessManager
from .worktree_manager import PickError, WorktreeError, WorktreeHandle, WorktreeManager

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 2000


class IterationError(Exception):
    """Request-level failure carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class InvalidIterationName(IterationError):
    status_code = 400


class IterationExists(IterationError):
    status_code = 409


class CapacityExceeded(IterationError):
    status_code = 429


class IterationNotFound(IterationError):
    status_code = 404


class IterationAbandoned(IterationError):
    """The iteration was removed or picked while it was still being created."""

    status_code = 409


class CommandFailedError(RuntimeError):
    """A setup command (install/build) exited non-zero."""


async def run_setup_command(command: str, cwd: Path) -> None:
    """Run an install/build command to completion inside a worktree."""
    logger.info("Running `%s` in %s", command, cwd)
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise CommandFailedError(f"Failed to run `{command}`: {exc}") from exc
    output, _ = await process.communicate()
    if process.returncode != 0:
        tail = output.decode("utf-8", errors="replace")[-_OUTPUT_TAIL_CHARS:].strip()
        raise CommandFailedError(f"`{command}` exited with status {process.returncode}: {tail}")


class IterationService:
    """Drive the worktree and process managers and keep store and clients in sync."""

    def __init__(
        self,
        store: IterationStore,
        worktrees: WorktreeManager,
        processes: ProcessManager,
        hub: WebSocketHub,
    ) -> None:
        self.store = store
        self.worktrees = worktrees
        self.processes = processes
        self.hub = hub
        self._watchers: set[asyncio.Task[None]] = set()

    @property
    def config(self) -> IterateConfig:
        return self.store.config

    def _is_current(self, info: IterationInfo) -> bool:
        return self.store.get_iteration(info.name) is info

    def _is_abandoned(self, info: IterationInfo) -> bool:
        return not self._is_current(info) or info.status == "stopped"

    def _check_alive(self, info: IterationInfo) -> None:
        if self._is_abandoned(info):
            raise IterationAbandoned(f'Iteration "{info.name}" was removed during creation')

    async def _set_status(self, info: IterationInfo, status: IterationStatus) -> None:
        # A removed record is never written back.
        if not self._is_current(info):
            return
        info.status = status
        self.store.set_iteration(info)
        await self.hub.broadcast("iteration:status", {"name": info.name, "status": status})

    def _validate_new(self, name: str, *, reserved: int = 0) -> None:
        if not name:
            raise InvalidIterationName("Name is required")
        if not is_valid_name(name):
            raise InvalidIterationName(
                f"Invalid iteration name '{name}': use letters, digits, '-' or '_' only"
            )
        if self.store.get_iteration(name) is not None:
            raise IterationExists(f'Iteration "{name}" already exists')
        limit = self.config.max_iterations
        if len(self.store.get_iterations()) + reserved >= limit:
            raise CapacityExceeded(f"Maximum iterations ({limit}) reached. Remove one first.")

    async def create_iteration(
        self,
        name: str,
        base_branch: Optional[str] = None,
        *,
        command_prompt: Optional[str] = None,
        command_id: Optional[str] = None,
    ) -> IterationInfo:
        """Create worktree, install, spawn the preview server; returns the ready record.

        Validation happens before the record is inserted and before the first
        await, so concurrent requests for one name cannot both pass it. After
        every await the record is checked again: if a delete or pick retired
        it meanwhile, anything this call already started is torn down and
        ``IterationAbandoned`` is raised instead of writing the record back.
        """
        self._validate_new(name)
        info = IterationInfo(name=name, command_prompt=command_prompt, command_id=command_id)
        self.store.set_iteration(info)
        handle: Optional[WorktreeHandle] = None
        pid: Optional[int] = None
        try:
            await self._set_status(info, "creating")
            self._check_alive(info)
            handle = await asyncio.to_thread(self.worktrees.create, name, base_branch)
            self._check_alive(info)
            info.worktree_path = str(handle.worktree_path)
            info.branch = handle.branch

            await self._set_status(info, "installing")
            await run_setup_command(install_command(self.config), handle.worktree_path)
            self._check_alive(info)
            if self.config.build_command:
                await run_setup_command(self.config.build_command, handle.worktree_path)
                self._check_alive(info)

            await self._set_status(info, "starting")
            self._check_alive(info)
            port = self.processes.allocate_port()
            command = build_dev_command(self.config.dev_command, port)
            pid = await self.processes.start(name, handle.worktree_path, command, port)
            exited = self.processes.exit_future(name)
            self._check_alive(info)
            info.port = port
            info.pid = pid

            info.status = "ready"
            self.store.set_iteration(info)
            await self.hub.broadcast("iteration:created", info.to_dict())
            await self.hub.broadcast("iteration:status", {"name": name, "status": "ready"})
            if exited is not None:
                self._supervise(name, pid, exited)
        except Exception as exc:
            if self._is_abandoned(info):
                logger.info("Iteration %s was retired during creation", name)
                await self._discard(name, handle, pid)
                if isinstance(exc, IterationAbandoned):
                    raise
                raise IterationAbandoned(f'Iteration "{name}" was removed during creation') from exc
            logger.error("Failed to create iteration %s: %s", name, exc)
            await self._set_status(info, "error")
            raise IterationError(f"Failed to create iteration: {exc}") from exc
        logger.info("Iteration %s ready on port %s", name, info.port)
        return info

    async def _discard(self, name: str, handle: Optional[WorktreeHandle], pid: Optional[int]) -> None:
        """Undo what an abandoned create started, leaving newer records of ``name`` alone."""
        managed = self.processes.get(name)
        if pid is not None and managed is not None and managed.pid == pid:
            await self.processes.stop(name)
        if handle is None or self.store.get_iteration(name) is not None:
            return
        try:
            await asyncio.to_thread(self.worktrees.remove, name)
        except WorktreeError:
            # already removed by the delete or pick that retired it
            logger.debug("Worktree for %s already gone", name)

    def _supervise(self, name: str, pid: int, exited: asyncio.Future[ProcessExit]) -> None:
        task = asyncio.get_running_loop().create_task(self._watch_exit(name, pid, exited))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _watch_exit(self, name: str, pid: int, exited: asyncio.Future[ProcessExit]) -> None:
        result = await asyncio.shield(exited)
        if result.requested:
            return
        info = self.store.get_iteration(name)
        if info is None or info.pid != pid:
            return
        logger.warning("Preview server for %s exited with code %s", name, result.returncode)
        await self._set_status(info, "error")

    async def remove_iteration(self, name: str) -> None:
        """Drop the record, stop the server and remove the worktree (if still there).

        The record goes first so an in-flight create of ``name`` sees it is gone
        at its next step and cleans up after itself.
        """
        if not self.store.remove_iteration(name):
            raise IterationNotFound(f'Iteration "{name}" not found')
        await self.processes.stop(name)
        try:
            await asyncio.to_thread(self.worktrees.remove, name)
        except WorktreeError as exc:
            logger.warning("Worktree for %s was not removed: %s", name, exc)
        await self.hub.broadcast("iteration:removed", {"name": name})

    async def pick(self, name: str, strategy: PickStrategy = "merge") -> dict[str, Any]:
        """Merge the winner into the current branch and drop every iteration."""
        if self.store.get_iteration(name) is None:
            raise IterationNotFound(f'Iteration "{name}" not found')
        all_names = list(self.store.get_iterations())
        # Marked before stopping so in-flight creates abandon instead of spawning.
        for other in all_names:
            info = self.store.get_iteration(other)
            if info is not None and info.status != "stopped":
                await self._set_status(info, "stopped")
        await self.processes.stop_all()
        try:
            await asyncio.to_thread(self.worktrees.pick, name, all_names, strategy)
        except PickError as exc:
            raise IterationError(str(exc)) from exc
        for other in all_names:
            self.store.remove_iteration(other)
            await self.hub.broadcast("iteration:removed", {"name": other})
        return {"ok": True, "merged": name}

    async def run_command(
        self,
        command: str,
        prompt: str,
        count: int,
        base_branch: Optional[str] = None,
    ) -> dict[str, Any]:
        """Spawn ``count`` variations named ``<command>-<n>`` sharing one command context."""
        if not command.strip():
            raise IterationError("Command is required", status_code=400)
        if count < 1:
            raise IterationError("Count must be at least 1", status_code=400)
        names = [f"{command}-{idx}" for idx in range(1, count + 1)]
        for offset, name in enumerate(names):
            self._validate_new(name, reserved=offset)

        context = CommandContext(command_id=new_id(), prompt=prompt, iterations=names)
        self.store.set_command_context(context)
        await self.hub.broadcast(
            "command:started",
            {"commandId": context.command_id, "prompt": prompt, "iterations": names},
        )
        results = await asyncio.gather(
            *(
                self.create_iteration(n, base_branch, command_prompt=prompt, command_id=context.command_id)
                for n in names
            ),
            return_exceptions=True,
        )
        iterations: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for name, result in zip(names, results):
            if isinstance(result, IterationInfo):
                iterations[name] = result.to_dict()
            elif isinstance(result, Exception):
                errors[name] = str(result)
            else:
                raise cast(BaseException, result)
        return {**context.to_dict(), "results": iterations, "errors": errors}

    async def set_annotation_status(self, annotation_id: str, status: str) -> dict[str, Any]:
        if status not in VALID_ANNOTATION_STATUSES:
            raise IterationError(f"Unknown annotation status '{status}'", status_code=400)
        annotation = self.store.update_annotation(annotation_id, {"status": status})
        if annotation is None:
            raise IterationError(f'Annotation "{annotation_id}" not found', status_code=404)
        await self.hub.broadcast("annotation:updated", dict(annotation))
        return annotation

    async def shutdown(self) -> None:
        await self.processes.stop_all()
        for task in list(self._watchers):
            task.cancel()
