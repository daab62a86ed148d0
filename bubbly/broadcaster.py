import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from bubbly.internal.routing.rooms import ConnectionRegistry, RoomRouter
from bubbly.internal.storage.history import ChatHistory, validate_room_id

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    DISCONNECTED = "disconnected"


class Connection:
    """One client's event channel.

    Wraps anything exposing an async ``send_json`` (a FastAPI ``WebSocket``
    in production) and remembers the identity the client announced.
    """

    def __init__(self, websocket: Any):
        self.websocket = websocket
        self.id = uuid.uuid4().hex
        self.user_id: Optional[str] = None
        self.username: Optional[str] = None
        self.state = ConnectionState.UNREGISTERED

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.DISCONNECTED

    async def send_event(self, event: str, data: Dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def send_ack(self, ack_id: Any, data: Dict[str, Any]) -> None:
        await self.websocket.send_json({"event": "ack", "ackId": ack_id, "data": data})

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, user_id={self.user_id}, state={self.state.value})"


class ConnectionManager:
    """Live connections, their room subscriptions and room fan-out."""

    def __init__(self, history: ChatHistory):
        self.history = history
        self.registry = ConnectionRegistry()
        self.router = RoomRouter()
        self.active_connections: Set[Connection] = set()

    async def connect(self, websocket: Any) -> Connection:
        await websocket.accept()
        connection = Connection(websocket)
        self.active_connections.add(connection)
        logger.info(f"Connection {connection.id} opened.")
        return connection

    def register(self, connection: Connection, user_id: str, username: Optional[str] = None) -> None:
        if connection.user_id and connection.user_id != user_id:
            self.registry.remove_if_current(connection.user_id, connection)
        connection.user_id = user_id
        if username:
            connection.username = username
        connection.state = ConnectionState.REGISTERED
        self.registry.upsert(user_id, connection)
        logger.info(f"User {username or user_id} registered on connection {connection.id}")

    async def join(self, connection: Connection, room: str, user_id: str, username: Optional[str] = None) -> List[Dict[str, Any]]:
        """Subscribe a connection to a room and replay the room history to it alone."""
        validate_room_id(room)
        self.register(connection, user_id, username)
        newly_joined = self.router.join(connection, room)

        history = await asyncio.to_thread(self.history.load, room)
        await self.send_personal_message(connection, "chatHistory", {"room": room, "history": history})

        if newly_joined:
            logger.info(f"User {connection.username or user_id} joined room {room}")
            await self.broadcast(room, "userJoined", {
                "room": room,
                "userId": user_id,
                "username": connection.username,
            }, exclude=connection)
        return history

    def leave(self, connection: Connection, room: str) -> bool:
        left = self.router.leave(connection, room)
        if left:
            logger.info(f"User {connection.username or connection.user_id} left room {room}")
        return left

    async def disconnect(self, connection: Connection) -> List[str]:
        if connection.state == ConnectionState.DISCONNECTED:
            return []
        connection.state = ConnectionState.DISCONNECTED
        self.active_connections.discard(connection)
        rooms = self.router.drop(connection)
        if connection.user_id:
            self.registry.remove_if_current(connection.user_id, connection)
        logger.info(f"Connection {connection.id} ({connection.username or connection.user_id}) disconnected.")

        for room in rooms:
            await self.broadcast(room, "userLeft", {
                "room": room,
                "userId": connection.user_id,
                "username": connection.username,
            })
        return rooms

    async def send_personal_message(self, connection: Connection, event: str, data: Dict[str, Any]) -> bool:
        if not connection.is_open:
            return False
        try:
            await connection.send_event(event, data)
            return True
        except Exception as e:
            logger.warning(f"Failed to send '{event}' to connection {connection.id}: {e}")
            return False

    async def send_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> bool:
        """Push an event to the user's registered connection, if any."""
        connection = self.registry.get(user_id)
        if connection is None:
            return False
        return await self.send_personal_message(connection, event, data)

    async def broadcast(self, room: str, event: str, data: Dict[str, Any], exclude: Optional[Connection] = None) -> int:
        """Send an event to every subscriber of a room and return how many received it."""
        delivered = 0
        failed_connections = []
        for connection in self.router.subscribers(room):
            if connection is exclude:
                continue
            if await self.send_personal_message(connection, event, data):
                delivered += 1
            else:
                failed_connections.append(connection)

        # A subscriber that cannot be written to no longer receives room traffic
        for connection in failed_connections:
            self.router.drop(connection)
        return delivered
