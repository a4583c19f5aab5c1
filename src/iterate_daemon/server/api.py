"""FastAPI app wiring for the iterate daemon."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import httpx
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import IterateConfig, load_config
from ..runtime.api import RouteDeps, create_router
from ..runtime.events import WebSocketHub
from ..runtime.orchestrator import IterationService, ProcessManager, WorktreeManager
from ..runtime.proxy import ProxyRouter, register_proxy_routes
from ..runtime.storage import IterationStore

logger = logging.getLogger(__name__)

SHUTDOWN_DELAY_SECONDS = 0.5


def create_app(
    project_dir: Optional[Path] = None,
    config: Optional[IterateConfig] = None,
    worktrees: Optional[WorktreeManager] = None,
    processes: Optional[ProcessManager] = None,
    proxy_client: Optional[httpx.AsyncClient] = None,
    on_shutdown: Optional[Callable[[], None]] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the daemon application.

    Args:
        project_dir (Optional[Path]): Repository the daemon manages. Defaults to
            ``ITERATE_CWD`` or the current working directory.
        config (Optional[IterateConfig]): Settings to use instead of reading
            ``.iterate/config.*`` from ``project_dir``.
        worktrees (Optional[WorktreeManager]): Worktree manager override.
        processes (Optional[ProcessManager]): Process manager override; the
            default starts allocating at ``config.base_port``.
        proxy_client (Optional[httpx.AsyncClient]): HTTP client used by the
            reverse proxy.
        on_shutdown (Optional[Callable[[], None]]): Called shortly after
            ``POST /api/shutdown`` has answered, to stop the server.
        enable_cors (bool): Whether to install permissive CORS middleware for
            browser clients.

    Returns:
        FastAPI: Configured application with store, hub, service and proxy
        stored on ``app.state``.
    """
    resolved_dir = (project_dir or Path(os.environ.get("ITERATE_CWD") or Path.cwd())).expanduser().resolve()
    resolved_config = config if config is not None else load_config(resolved_dir)

    store = IterationStore(resolved_config)
    hub = WebSocketHub(store)
    service = IterationService(
        store,
        worktrees or WorktreeManager(resolved_dir),
        processes or ProcessManager(resolved_config.base_port),
        hub,
    )
    proxy = ProxyRouter(store, client=proxy_client)

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Iterate daemon serving %s", resolved_dir)
        try:
            yield
        finally:
            await service.shutdown()
            await proxy.aclose()

    app = FastAPI(
        title="Iterate Daemon",
        description="Parallel UI iterations on git worktrees",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.project_dir = resolved_dir
    app.state.store = store
    app.state.hub = hub
    app.state.service = service
    app.state.proxy = proxy

    router = create_router(RouteDeps(store=store, service=service))

    @router.post("/shutdown")
    async def shutdown() -> dict[str, object]:
        """Stop every preview server, then ask the host process to exit."""
        await service.processes.stop_all()
        if on_shutdown is not None:
            asyncio.get_running_loop().call_later(SHUTDOWN_DELAY_SECONDS, on_shutdown)
        return {"ok": True}

    app.include_router(router)

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        return {"status": "ok", "version": __version__, "iterations": len(store.get_iterations())}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await hub.handle_connection(websocket)

    # The catch-all proxy must come after every concrete route.
    register_proxy_routes(app, proxy)

    return app
