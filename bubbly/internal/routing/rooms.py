import logging
import threading
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

PRIVATE_PREFIX = "private_"
GROUP_PREFIX = "group_"


def private_room_id(user_a: str, user_b: str) -> str:
    """Room shared by two users; both sides derive the same id whoever initiates."""
    first, second = sorted([user_a, user_b])
    return f"{PRIVATE_PREFIX}{first}_{second}"


def group_room_id(group_id: str) -> str:
    return f"{GROUP_PREFIX}{group_id}"


def is_group_room(room: str) -> bool:
    return isinstance(room, str) and room.startswith(GROUP_PREFIX)


def group_id_from_room(room: str) -> Optional[str]:
    if not is_group_room(room):
        return None
    return room[len(GROUP_PREFIX):]


class ConnectionRegistry:
    """Maps a user id to that user's most recent live connection.

    Last writer wins: a newer connection replaces the older one without
    touching the older connection's room subscriptions.
    """

    def __init__(self):
        self._connections: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def upsert(self, user_id: str, connection: Any) -> Optional[Any]:
        """Register ``connection`` for ``user_id`` and return the connection it replaced."""
        with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = connection
        if previous is not None and previous is not connection:
            logger.info(f"User {user_id} has a newer connection, replacing the previous one")
        return previous

    def remove_if_current(self, user_id: str, connection: Any) -> bool:
        with self._lock:
            if self._connections.get(user_id) is connection:
                del self._connections[user_id]
                return True
        return False

    def get(self, user_id: str) -> Optional[Any]:
        with self._lock:
            return self._connections.get(user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


class RoomRouter:
    """Room subscriptions of live connections.

    A connection may be subscribed to any number of rooms at once.
    """

    def __init__(self):
        self._rooms: Dict[str, List[Any]] = {}
        self._memberships: Dict[Any, Set[str]] = {}
        self._lock = threading.Lock()

    def join(self, connection: Any, room: str) -> bool:
        """Subscribe a connection; returns False if it was already subscribed."""
        with self._lock:
            subscribers = self._rooms.setdefault(room, [])
            if connection in subscribers:
                return False
            subscribers.append(connection)
            self._memberships.setdefault(connection, set()).add(room)
        return True

    def leave(self, connection: Any, room: str) -> bool:
        with self._lock:
            subscribers = self._rooms.get(room)
            if not subscribers or connection not in subscribers:
                return False
            subscribers.remove(connection)
            if not subscribers:
                del self._rooms[room]
            rooms = self._memberships.get(connection)
            if rooms is not None:
                rooms.discard(room)
                if not rooms:
                    del self._memberships[connection]
        return True

    def drop(self, connection: Any) -> List[str]:
        """Remove a connection from every room and return the rooms it was in."""
        rooms = sorted(self.rooms_of(connection))
        for room in rooms:
            self.leave(connection, room)
        return rooms

    def subscribers(self, room: str) -> List[Any]:
        with self._lock:
            return list(self._rooms.get(room, []))

    def rooms_of(self, connection: Any) -> Set[str]:
        with self._lock:
            return set(self._memberships.get(connection, set()))

    def is_subscribed(self, connection: Any, room: str) -> bool:
        with self._lock:
            return room in self._memberships.get(connection, set())
