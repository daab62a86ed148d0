import logging
import re
from typing import Any, Dict, List

from ..domain.errors import Invalid, StoreFailure
from .json_store import HISTORY_DIR, JsonStore

logger = logging.getLogger(__name__)

ROOM_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


def validate_room_id(room: str) -> str:
    if not isinstance(room, str) or not ROOM_ID_PATTERN.match(room):
        raise Invalid(f"Invalid room identifier: {room!r}")
    return room


class ChatHistory:
    """Bounded per-room message history stored as one JSON array per room.

    Attributes:
        store (JsonStore): Backing document store.
        limit (int): Maximum number of messages kept per room; oldest evicted first.
    """

    def __init__(self, store: JsonStore, limit: int):
        self.store = store
        self.limit = limit

    def _document(self, room: str) -> str:
        return f"{HISTORY_DIR}/{validate_room_id(room)}"

    def append(self, room: str, message: Dict[str, Any]) -> bool:
        """Append a message to the room history.

        Args:
            room (str): Room identifier.
            message (dict): Message record; must carry a ``messageId``.

        Returns:
            bool: True if the message was stored, False if an entry with the
                  same ``messageId`` was already present.

        Raises:
            Invalid: If the room identifier is not usable as a document name.
            StoreFailure: If the history could not be written.
        """
        name = self._document(room)
        with self.store.locked(name):
            history = self.store.load(name)
            message_id = message.get('messageId')
            if message_id is not None and any(m.get('messageId') == message_id for m in history):
                logger.info(f"Message {message_id} already stored in room {room}, skipping.")
                return False

            history.append(message)
            if len(history) > self.limit:
                history = history[-self.limit:]

            if not self.store.save(name, history):
                raise StoreFailure(f"Failed to save chat message for room {room}")
        return True

    def load(self, room: str) -> List[Dict[str, Any]]:
        """Return the room history ordered by timestamp, ties in insertion order."""
        history = self.store.load(self._document(room))
        return sorted(history, key=lambda m: m.get('timestamp') or 0)
