"""Message submission: validation, per-room ordering, persistence and fan-out.

Delivery contract: every accepted message is broadcast to all subscribers of
its room, the sender's own connection included. An optional direct push to a
named recipient may deliver the same message twice, so delivery is
at-least-once and clients deduplicate by ``messageId``.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError

from bubbly.broadcaster import Connection, ConnectionManager
from bubbly.internal.domain.errors import ChatError, Invalid
from bubbly.internal.domain.models import (Acknowledgment, ChatMessage,
                                           DeliveryStatus, MessageType, now_ms)
from bubbly.internal.storage.history import ChatHistory, validate_room_id

logger = logging.getLogger(__name__)

# Event name broadcast for each message type
BROADCAST_EVENTS = {
    MessageType.TEXT.value: "chatMessage",
    MessageType.LOCATION.value: "locationMessage",
    MessageType.VOICE.value: "voiceMessage",
}

REQUIRED_PAYLOAD = {
    MessageType.TEXT.value: ("text",),
    MessageType.LOCATION.value: ("url",),
    MessageType.VOICE.value: ("audio",),
}


class MessageDispatcher:
    """Persists submitted messages and fans them out to room subscribers.

    Attributes:
        history (ChatHistory): Per-room bounded history.
        manager (ConnectionManager): Live connections and room subscriptions.
        require_message_id (bool): Reject messages without a client ``messageId``
            instead of minting one on the server.
    """

    def __init__(self, history: ChatHistory, manager: ConnectionManager, require_message_id: bool = True):
        self.history = history
        self.manager = manager
        self.require_message_id = require_message_id
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._room_waiters: Dict[str, int] = {}

    def prepare(self, payload: Dict[str, Any], room: Optional[str], sender: Optional[Connection]) -> ChatMessage:
        """Validate an inbound payload and fill in server-assigned fields.

        Raises:
            Invalid: If required fields are missing or inconsistent.
        """
        room = room or payload.get("room")
        if not room:
            raise Invalid("Message room is required")
        validate_room_id(room)

        try:
            message = ChatMessage.model_validate({**payload, "room": room})
        except ValidationError as e:
            fields = sorted({".".join(str(part) for part in error["loc"]) for error in e.errors()})
            raise Invalid("Malformed message", details={"fields": fields})

        for field in REQUIRED_PAYLOAD[message.type]:
            value = getattr(message, field)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise Invalid(f"Field '{field}' is required for {message.type} messages")

        if sender is not None:
            if sender.user_id is None:
                raise Invalid("Connection must register a user before sending messages")
            if message.sender != sender.user_id:
                raise Invalid("Message sender does not match the registered user")
            if message.senderUsername is None:
                message.senderUsername = sender.username

        if message.timestamp is None:
            message.timestamp = now_ms()
        if not message.messageId:
            if self.require_message_id:
                raise Invalid("messageId is required")
            message.messageId = f"srv_{uuid.uuid4().hex}"
            logger.warning(f"Message from {message.sender} in room {room} had no messageId, assigned {message.messageId}")
        return message

    async def submit(self, payload: Dict[str, Any], room: Optional[str] = None,
                     sender: Optional[Connection] = None, recipient_id: Optional[str] = None) -> Acknowledgment:
        """Accept one message for a room and report the outcome to the sender.

        Args:
            payload (dict): Inbound message fields.
            room (str, optional): Target room; taken from the payload when omitted.
            sender (Connection, optional): Submitting connection; receives an
                ``errorMessage`` event when the submission fails.
            recipient_id (str, optional): User to push the message to directly
                when their connection is not subscribed to the room.

        Returns:
            Acknowledgment: ``success`` with the ``messageId`` once persisted and
                fanned out, or the failure reason.
        """
        message_id = payload.get("messageId") if isinstance(payload, dict) else None
        try:
            message = self.prepare(payload, room, sender)
            message_id = message.messageId
            return await self._dispatch(message, recipient_id)
        except ChatError as e:
            logger.warning(f"Rejected message {message_id}: {e.message}")
            return await self._fail(sender, message_id, e.message, e.code)
        except Exception as e:
            logger.error(f"Error dispatching message {message_id}: {e}", exc_info=True)
            return await self._fail(sender, message_id, "Failed to deliver message", "error")

    @asynccontextmanager
    async def _room_lock(self, room: str) -> AsyncIterator[None]:
        """Serialize submissions per room; the lock is dropped once nobody holds or awaits it."""
        lock = self._room_locks.get(room)
        if lock is None:
            lock = self._room_locks[room] = asyncio.Lock()
        self._room_waiters[room] = self._room_waiters.get(room, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._room_waiters[room] -= 1
            if not self._room_waiters[room]:
                del self._room_waiters[room]
                del self._room_locks[room]

    async def _dispatch(self, message: ChatMessage, recipient_id: Optional[str]) -> Acknowledgment:
        record = message.to_record()
        event = BROADCAST_EVENTS[message.type]

        async with self._room_lock(message.room):
            # The write finishes even if the submitting client goes away meanwhile
            stored = await asyncio.shield(asyncio.to_thread(self.history.append, message.room, record))
            if not stored:
                return Acknowledgment(success=True, messageId=message.messageId, duplicate=True)

            delivered = await self.manager.broadcast(message.room, event, record)
            logger.debug(f"Message {message.messageId} delivered to {delivered} subscribers of {message.room}")
            delivery = await self._push_direct(message, record, event, recipient_id)

        return Acknowledgment(success=True, messageId=message.messageId, delivery=delivery)

    async def _push_direct(self, message: ChatMessage, record: Dict[str, Any], event: str,
                           recipient_id: Optional[str]) -> Optional[DeliveryStatus]:
        if not recipient_id or recipient_id == message.sender:
            return None
        connection = self.manager.registry.get(recipient_id)
        if connection is None:
            logger.info(f"Recipient {recipient_id} of message {message.messageId} has no live connection")
            return DeliveryStatus.UNREACHABLE
        if self.manager.router.is_subscribed(connection, message.room):
            return DeliveryStatus.ROOM
        if await self.manager.send_personal_message(connection, event, record):
            return DeliveryStatus.DIRECT
        return DeliveryStatus.UNREACHABLE

    async def _fail(self, sender: Optional[Connection], message_id: Optional[str], error: str, code: str) -> Acknowledgment:
        ack = Acknowledgment(success=False, messageId=message_id, error=error, code=code)
        if sender is not None:
            await self.manager.send_personal_message(sender, "errorMessage", {
                "error": error,
                "code": code,
                "messageId": message_id,
            })
        return ack

    async def load_history(self, room: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.history.load, room)
