"""Reverse proxy from ``/<iteration>/...`` to the iteration's preview server."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from ..domain.models import IterationInfo
from ..storage.store import IterationStore

logger = logging.getLogger(__name__)

RESERVED_PREFIXES = {"api", "ws"}
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def upstream_path(request: Request, iteration: str) -> str:
    """Request path with the leading ``/<iteration>`` removed, still percent-encoded."""
    raw_path = request.scope.get("raw_path")
    full = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
    rest = full[len(iteration) + 1:] if full.startswith(f"/{iteration}") else full
    return rest or "/"


class ProxyRouter:
    """Forward requests verbatim to ``127.0.0.1:<port>`` of a ready iteration."""

    def __init__(self, store: IterationStore, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._store = store
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=5.0))

    def resolve(self, iteration: str) -> IterationInfo:
        """Return the target iteration or raise a 404 without connecting anywhere."""
        if iteration in RESERVED_PREFIXES:
            raise HTTPException(status_code=404, detail="Not found")
        info = self._store.get_iteration(iteration)
        if info is None or info.status != "ready":
            raise HTTPException(status_code=404, detail=f'Iteration "{iteration}" not found or not ready')
        return info

    async def forward(self, request: Request, iteration: str) -> StreamingResponse:
        """Proxy one request, streaming the upstream body back unmodified.

        Raises:
            HTTPException: 404 for unknown/not-ready iterations, 502 when the
                upstream cannot be reached.
        """
        info = self.resolve(iteration)
        host = f"127.0.0.1:{info.port}"
        url = f"http://{host}{upstream_path(request, iteration)}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        headers = [
            (key, value)
            for key, value in request.headers.items()
            if key.lower() not in _HOP_BY_HOP_HEADERS and key.lower() != "host"
        ]
        headers.append(("host", host))
        upstream_request = self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=await request.body(),
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TransportError as exc:
            logger.warning("Proxy to %s (%s) failed: %s", iteration, url, exc)
            raise HTTPException(status_code=502, detail=f'Failed to proxy to iteration "{iteration}"') from exc
        response_headers = {
            key: value
            for key, value in upstream.headers.items()
            if key.lower() not in _HOP_BY_HOP_HEADERS
        }
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=response_headers,
            background=BackgroundTask(upstream.aclose),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def register_proxy_routes(app: FastAPI, proxy: ProxyRouter) -> None:
    """Register the catch-all proxy routes; call after every other route."""

    @app.api_route("/{iteration}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_root(iteration: str, request: Request) -> StreamingResponse:
        return await proxy.forward(request, iteration)

    @app.api_route("/{iteration}/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_path(iteration: str, path: str, request: Request) -> StreamingResponse:
        return await proxy.forward(request, iteration)
