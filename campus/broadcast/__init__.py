"""Live statistics push: connection registry, broadcast service, WebSocket endpoint."""

from .registry import Connection, ConnectionRegistry
from .service import BroadcastService, TYPE_USER, TYPE_SYSTEM, TYPE_RECOMMENDATIONS
from .server import WebSocketBroadcastServer, WebSocketConnection

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "BroadcastService",
    "TYPE_USER",
    "TYPE_SYSTEM",
    "TYPE_RECOMMENDATIONS",
    "WebSocketBroadcastServer",
    "WebSocketConnection",
]
