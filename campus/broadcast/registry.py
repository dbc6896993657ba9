"""
Live subscriber connections.

One registry object owns every per-user and admin connection behind a
single lock; callers never see the underlying collections, only snapshots.
"""

import threading
from typing import Protocol, Dict, List, Optional, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    connection_id: str

    @property
    def is_open(self) -> bool:
        ...

    def send_text(self, text: str) -> None:
        ...


class ConnectionRegistry:

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[int, Dict[str, Connection]] = {}
        self._admins: Dict[str, Connection] = {}
        self._owner: Dict[str, Optional[int]] = {}

    def add_user(self, user_id: int, conn: Connection) -> None:
        with self._lock:
            self._detach_locked(conn.connection_id)
            self._users.setdefault(user_id, {})[conn.connection_id] = conn
            self._owner[conn.connection_id] = user_id

    def add_admin(self, conn: Connection) -> None:
        with self._lock:
            self._detach_locked(conn.connection_id)
            self._admins[conn.connection_id] = conn
            self._owner[conn.connection_id] = None

    def remove(self, conn: Connection) -> bool:
        """Remove *conn* wherever it is registered. Safe to call repeatedly."""
        with self._lock:
            return self._detach_locked(conn.connection_id)

    def _detach_locked(self, connection_id: str) -> bool:
        if connection_id not in self._owner:
            return False
        user_id = self._owner.pop(connection_id)
        if user_id is None:
            self._admins.pop(connection_id, None)
        else:
            conns = self._users.get(user_id)
            if conns is not None:
                conns.pop(connection_id, None)
                if not conns:
                    del self._users[user_id]
        return True

    def user_connections(self, user_id: int) -> List[Connection]:
        with self._lock:
            return list(self._users.get(user_id, {}).values())

    def admin_connections(self) -> List[Connection]:
        with self._lock:
            return list(self._admins.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._owner)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "users": len(self._users),
                "user_connections": sum(len(c) for c in self._users.values()),
                "admin_connections": len(self._admins),
            }
