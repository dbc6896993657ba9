"""
WebSocket push endpoint for live statistics.

Paths:
    /ws/user/<user_id>   per-user statistics and recommendations
    /ws/admin            system-wide statistics

Clients only listen; inbound frames are ignored. The server runs the
websockets sync server on a background thread.
"""

import os
import threading
from typing import Optional

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State
from websockets.sync.server import serve, ServerConnection

from campus.broadcast.service import BroadcastService
from campus.logging import get_logger, LogStream

USER_PATH_PREFIX = "/ws/user/"
ADMIN_PATH = "/ws/admin"


class WebSocketConnection:
    """Adapts a websockets ServerConnection to the Connection protocol."""

    def __init__(self, websocket: ServerConnection):
        self._ws = websocket
        self.connection_id = str(websocket.id)

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    def send_text(self, text: str) -> None:
        self._ws.send(text)


class WebSocketBroadcastServer:

    def __init__(self, broadcast: BroadcastService, host: str = "127.0.0.1", port: int = 8765,
                 *, daemon: Optional[bool] = None):
        self.broadcast = broadcast
        self.host = host
        self.port = port
        self.logger = get_logger(LogStream.BROADCAST)
        self._server = None
        self._thread: Optional[threading.Thread] = None
        if daemon is None:
            daemon = bool(os.environ.get('PYTEST_CURRENT_TEST') or os.environ.get('PYTEST_RUNNING'))
        self._daemon = bool(daemon)

    def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("Broadcast server already running")
        self._server = serve(self._handle, self.host, self.port)
        # port 0 binds an ephemeral port
        self.port = self._server.socket.getsockname()[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="broadcast-server",
            daemon=self._daemon,
        )
        self._thread.start()
        self.logger.info(f"Broadcast server listening on ws://{self.host}:{self.port}")

    def stop(self, timeout: float = 5.0) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._server = None
        self._thread = None
        self.logger.info("Broadcast server stopped")

    def _handle(self, websocket: ServerConnection) -> None:
        path = websocket.request.path if websocket.request is not None else ""
        conn = WebSocketConnection(websocket)

        if path == ADMIN_PATH:
            self.broadcast.register_admin(conn)
        elif path.startswith(USER_PATH_PREFIX):
            try:
                user_id = int(path[len(USER_PATH_PREFIX):])
            except ValueError:
                websocket.close(code=1008, reason="invalid user id")
                return
            self.broadcast.register_user(user_id, conn)
        else:
            websocket.close(code=1008, reason="unknown path")
            return

        try:
            for _ in websocket:
                pass
        except ConnectionClosed as e:
            self.logger.debug(
                f"Connection {conn.connection_id} closed",
                extra={"connection_id": conn.connection_id, "code": getattr(e.rcvd, "code", None)},
            )
        finally:
            self.broadcast.remove(conn)
