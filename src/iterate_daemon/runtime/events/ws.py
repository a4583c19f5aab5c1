"""Websocket hub that syncs daemon state to every connected client."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..domain.models import build_annotation, build_dom_change
from ..storage.store import IterationStore
from .messages import (
    AnnotationCreateMessage,
    AnnotationDeleteMessage,
    BatchSubmitMessage,
    DomMoveMessage,
    DomReorderMessage,
    DomResizeMessage,
    DomSelectMessage,
    DomStyleMessage,
    IterationCompareMessage,
    IterationSwitchMessage,
    ServerMessageType,
    parse_client_message,
    server_message,
)

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_STATE_TIMEOUT = 5.0
_EMPTY_RECT = {"x": 0, "y": 0, "width": 0, "height": 0}


class _Sender(Protocol):
    async def send_text(self, data: str) -> None: ...


class WebSocketHub:
    """Send snapshots on connect, apply client mutations, broadcast deltas.

    Apply-then-broadcast runs under one lock, so all clients see broadcasts in
    the same order and two messages from one client are broadcast in the
    order they arrived.
    """

    def __init__(self, store: IterationStore, *, initial_state_timeout: float = DEFAULT_INITIAL_STATE_TIMEOUT) -> None:
        self._store = store
        self._initial_state_timeout = initial_state_timeout
        self._clients: dict[int, _Sender] = {}
        # Deltas held for clients whose state:sync is still in flight.
        self._backlogs: dict[int, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def add_client(self, client: _Sender) -> None:
        self._clients[id(client)] = client

    def remove_client(self, client: _Sender) -> None:
        self._clients.pop(id(client), None)
        self._backlogs.pop(id(client), None)

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client from accept until disconnect.

        The snapshot is taken and the client registered under the lock, so no
        delta falls between them. The timed send happens outside it; deltas
        broadcast meanwhile are queued and flushed right after the snapshot.
        """
        await websocket.accept()
        async with self._lock:
            snapshot = json.dumps(server_message("state:sync", self._store.get_state()))
            self._backlogs[id(websocket)] = []
            self.add_client(websocket)
        try:
            await asyncio.wait_for(websocket.send_text(snapshot), timeout=self._initial_state_timeout)
        except (asyncio.TimeoutError, WebSocketDisconnect, RuntimeError):
            logger.info("Could not deliver initial state to websocket client; closing")
            self.remove_client(websocket)
            try:
                await websocket.close()
            except RuntimeError:
                pass
            return
        async with self._lock:
            backlog = self._backlogs.pop(id(websocket), [])
            for message in backlog:
                if not await self._send(websocket, message):
                    break
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_raw(raw, websocket)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            self.remove_client(websocket)

    async def handle_raw(self, raw: str, sender: _Sender) -> None:
        """Parse one frame; invalid frames get an ``error`` reply to the sender only."""
        try:
            message = parse_client_message(raw)
        except ValidationError as exc:
            logger.debug("Rejected websocket message: %s", exc)
            await self._send(sender, server_message("error", {"message": "Invalid message format"}))
            return
        await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        async with self._lock:
            for message_type, payload in self._apply(message):
                await self._broadcast_unlocked(message_type, payload)

    def _apply(self, message: Any) -> list[tuple[ServerMessageType, Any]]:
        """Mutate the store for one client message and return the deltas to broadcast."""
        store = self._store
        if isinstance(message, AnnotationCreateMessage):
            annotation = build_annotation(message.payload)
            store.add_annotation(annotation)
            return [("annotation:created", annotation)]

        if isinstance(message, AnnotationDeleteMessage):
            if store.remove_annotation(message.payload.id):
                return [("annotation:deleted", {"id": message.payload.id})]
            return []

        if isinstance(message, BatchSubmitMessage):
            out: list[tuple[ServerMessageType, Any]] = []
            batch = message.payload
            for item in batch.annotations:
                annotation = build_annotation(item)
                store.add_annotation(annotation)
                out.append(("annotation:created", annotation))
            for change in batch.dom_changes:
                store.add_dom_change(change)
                out.append(("dom:changed", change))
            out.append(
                (
                    "batch:submitted",
                    {
                        "batchId": str(uuid.uuid4()),
                        "annotationCount": len(batch.annotations),
                        "domChangeCount": len(batch.dom_changes),
                    },
                )
            )
            return out

        if isinstance(message, (DomMoveMessage, DomResizeMessage)):
            p = message.payload
            change = build_dom_change(
                iteration=p.iteration,
                selector=p.selector,
                change_type="move" if isinstance(message, DomMoveMessage) else "resize",
                before={"rect": p.from_.model_dump(), "computedStyles": {}},
                after={"rect": p.to.model_dump(), "computedStyles": {}},
            )
            store.add_dom_change(change)
            return [("dom:changed", change)]

        if isinstance(message, DomReorderMessage):
            p = message.payload
            change = build_dom_change(
                iteration=p.iteration,
                selector=p.selector,
                change_type="reorder",
                before={"rect": dict(_EMPTY_RECT), "computedStyles": {}},
                after={"rect": dict(_EMPTY_RECT), "computedStyles": {}, "siblingIndex": p.new_index},
            )
            store.add_dom_change(change)
            return [("dom:changed", change)]

        if isinstance(message, DomStyleMessage):
            p = message.payload
            change = build_dom_change(
                iteration=p.iteration,
                selector=p.selector,
                change_type="style",
                before={"rect": dict(_EMPTY_RECT), "computedStyles": dict(p.before)},
                after={"rect": dict(_EMPTY_RECT), "computedStyles": dict(p.after)},
            )
            store.add_dom_change(change)
            return [("dom:changed", change)]

        if isinstance(message, (DomSelectMessage, IterationSwitchMessage, IterationCompareMessage)):
            # reserved, nothing to apply at this layer
            return []

        raise TypeError(f"Unhandled client message: {type(message).__name__}")

    async def _send(self, client: _Sender, message: dict[str, Any]) -> bool:
        try:
            await client.send_text(json.dumps(message))
            return True
        except Exception:
            logger.debug("Dropping websocket client after send failure", exc_info=True)
            self.remove_client(client)
            return False

    async def _broadcast_unlocked(self, message_type: ServerMessageType, payload: Any) -> None:
        data = server_message(message_type, payload)
        for key, client in list(self._clients.items()):
            backlog = self._backlogs.get(key)
            if backlog is not None:
                backlog.append(data)
            else:
                await self._send(client, data)

    async def broadcast(self, message_type: ServerMessageType, payload: Any) -> None:
        """Send one server message to every connected client."""
        async with self._lock:
            await self._broadcast_unlocked(message_type, payload)
