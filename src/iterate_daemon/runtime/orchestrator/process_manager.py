"""Port allocation and supervision of preview-server child processes."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ITERATION_ENV_VAR = "ITERATE_ITERATION_NAME"
DEFAULT_PORT_RANGE = 100
DEFAULT_STOP_TIMEOUT = 5.0
_KILL_GRACE = 1.0


class ProcessStartError(RuntimeError):
    """The preview server could not be spawned."""


class PortAllocationError(RuntimeError):
    """Every port in the configured range is taken."""


@dataclass(frozen=True)
class ProcessExit:
    """How a supervised process ended.

    ``requested`` is true when the exit followed ``stop``/``stop_all``.
    """

    name: str
    returncode: Optional[int]
    requested: bool


@dataclass
class ManagedProcess:
    name: str
    port: int
    process: asyncio.subprocess.Process
    exited: asyncio.Future[ProcessExit]
    stop_requested: bool = False
    tasks: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid


def _is_port_available(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.debug("Not permitted to signal process group %s", pid, exc_info=True)


class ProcessManager:
    """Track one preview-server process per iteration name."""

    def __init__(
        self,
        base_port: int,
        *,
        port_range: int = DEFAULT_PORT_RANGE,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        self._base_port = base_port
        self._next_port = base_port
        self._max_port = base_port + port_range - 1
        self._stop_timeout = stop_timeout
        self._processes: dict[str, ManagedProcess] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._processes

    def names(self) -> list[str]:
        return list(self._processes)

    def get(self, name: str) -> Optional[ManagedProcess]:
        return self._processes.get(name)

    def allocate_port(self) -> int:
        """Return the first bindable port at or after the last allocation.

        Lower ports are never revisited during the manager's lifetime, so a
        port is not handed out twice while its iteration may still hold it.
        """
        for port in range(self._next_port, self._max_port + 1):
            if _is_port_available(port):
                self._next_port = port + 1
                return port
        raise PortAllocationError(f"No available ports in range {self._base_port}-{self._max_port}")

    async def start(self, name: str, cwd: Path, command: str, port: int) -> int:
        """Spawn ``command`` in ``cwd`` with ``PORT`` set and return its pid."""
        if name in self._processes:
            raise ProcessStartError(f"A process for '{name}' is already running")
        env = dict(os.environ)
        env["PORT"] = str(port)
        env[ITERATION_ENV_VAR] = name
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessStartError(f"Failed to start '{command}' for '{name}': {exc}") from exc

        loop = asyncio.get_running_loop()
        managed = ManagedProcess(name=name, port=port, process=process, exited=loop.create_future())
        self._processes[name] = managed
        managed.tasks = [
            loop.create_task(self._pump(name, process.stdout, logging.INFO)),
            loop.create_task(self._pump(name, process.stderr, logging.WARNING)),
            loop.create_task(self._watch(managed)),
        ]
        logger.info("Started %s (pid %s) on port %s: %s", name, process.pid, port, command)
        return process.pid

    async def _pump(self, name: str, stream: Optional[asyncio.StreamReader], level: int) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, "[%s] %s", name, text)

    async def _watch(self, managed: ManagedProcess) -> None:
        returncode = await managed.process.wait()
        # Only drop the entry if it still belongs to this process.
        if self._processes.get(managed.name) is managed:
            del self._processes[managed.name]
        if not managed.stop_requested:
            logger.warning("Process for %s exited unexpectedly with code %s", managed.name, returncode)
        if not managed.exited.done():
            managed.exited.set_result(
                ProcessExit(name=managed.name, returncode=returncode, requested=managed.stop_requested)
            )

    def exit_future(self, name: str) -> Optional[asyncio.Future[ProcessExit]]:
        """Future resolved when the tracked process of ``name`` exits."""
        managed = self._processes.get(name)
        return managed.exited if managed is not None else None

    async def wait(self, name: str) -> Optional[ProcessExit]:
        """Wait for the tracked process of ``name`` to exit; None if untracked."""
        managed = self._processes.get(name)
        if managed is None:
            return None
        return await asyncio.shield(managed.exited)

    async def stop(self, name: str) -> None:
        """SIGTERM, wait up to the stop timeout, then SIGKILL.

        The table entry is gone when this returns, whichever path was taken.
        """
        managed = self._processes.get(name)
        if managed is None:
            return
        managed.stop_requested = True
        try:
            _signal_group(managed.pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(asyncio.shield(managed.exited), timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Process for %s ignored SIGTERM, killing", name)
                _signal_group(managed.pid, signal.SIGKILL)
                try:
                    await asyncio.wait_for(asyncio.shield(managed.exited), timeout=_KILL_GRACE)
                except asyncio.TimeoutError:
                    logger.error("Process for %s did not exit after SIGKILL", name)
        finally:
            if self._processes.get(name) is managed:
                del self._processes[name]
        logger.info("Stopped %s", name)

    async def stop_all(self) -> None:
        """Stop every tracked process concurrently."""
        names = list(self._processes)
        if names:
            await asyncio.gather(*(self.stop(name) for name in names))
