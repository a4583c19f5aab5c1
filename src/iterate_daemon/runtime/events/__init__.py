"""Real-time protocol and websocket hub exports."""

from .messages import parse_client_message, server_message
from .ws import WebSocketHub

__all__ = ["WebSocketHub", "parse_client_message", "server_message"]
