import threading
from typing import Dict, FrozenSet, Hashable, Iterable, List, Set


class PresenceTracker:
    """
    Which users hold at least one live connection in this process.

    Constructed at startup and cleared at shutdown; nothing is persisted.
    Callers must unregister a handle before broadcasting anything about its
    departure, so fan-out never targets a closed handle.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Set[Hashable]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, connection: Hashable) -> bool:
        """Add a handle. True when this made the user online."""
        with self._lock:
            handles = self._connections.setdefault(user_id, set())
            came_online = not handles
            handles.add(connection)
            return came_online

    def unregister(self, user_id: str, connection: Hashable) -> bool:
        """Remove a handle. True only when it was the user's last one."""
        with self._lock:
            handles = self._connections.get(user_id)
            if not handles or connection not in handles:
                return False
            handles.discard(connection)
            if handles:
                return False
            del self._connections[user_id]
            return True

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._connections.get(user_id))

    def connections_for(self, user_id: str) -> FrozenSet[Hashable]:
        with self._lock:
            return frozenset(self._connections.get(user_id, ()))

    def online_users(self, user_ids: Iterable[str]) -> List[str]:
        with self._lock:
            return [uid for uid in user_ids if self._connections.get(uid)]

    def all_connections(self) -> List[Hashable]:
        with self._lock:
            return [conn for handles in self._connections.values() for conn in handles]

    @property
    def connection_count(self) -> int:
        with self._lock:
            return sum(len(handles) for handles in self._connections.values())

    def clear(self) -> List[Hashable]:
        with self._lock:
            handles = [conn for conns in self._connections.values() for conn in conns]
            self._connections.clear()
            return handles
