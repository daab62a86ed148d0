import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_AVATAR = "./assets/avatar.png"
DEFAULT_PREVIEW = "Say hello!"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class MessageType(str, Enum):
    TEXT = "text"
    LOCATION = "location"
    VOICE = "voice"


class DeliveryStatus(str, Enum):
    """Outcome of the optional direct push to a single recipient."""
    ROOM = "room"
    DIRECT = "direct"
    UNREACHABLE = "unreachable"


class FriendSummary(BaseModel):
    id: str
    username: str
    avatar: str = DEFAULT_AVATAR
    preview: str = DEFAULT_PREVIEW


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    password: str
    createdAt: int = Field(default_factory=now_ms)
    friends: List[FriendSummary] = Field(default_factory=list)

    def summary(self) -> FriendSummary:
        return FriendSummary(id=self.id, username=self.username)

    def is_friend_of(self, user_id: str) -> bool:
        return any(friend.id == user_id for friend in self.friends)

    def public(self) -> Dict[str, Any]:
        """Serialized form sent to clients; the password stays on the server."""
        return self.model_dump(exclude={"password"})


class Group(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    creatorId: str
    members: List[str] = Field(default_factory=list)
    createdAt: int = Field(default_factory=now_ms)


class ChatMessage(BaseModel):
    """A persisted chat entry.

    Only the payload fields for ``type`` are set; unset payload fields are
    dropped when the message is stored or broadcast.
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    type: MessageType = MessageType.TEXT
    sender: str
    senderUsername: Optional[str] = None
    room: str
    timestamp: Optional[int] = None
    messageId: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    audio: Optional[str] = None
    duration: Optional[float] = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Acknowledgment(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    success: bool
    messageId: Optional[str] = None
    duplicate: bool = False
    delivery: Optional[DeliveryStatus] = None
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return self.model_dump(exclude={"error", "code"}, exclude_none=True)
        return self.model_dump(exclude={"duplicate", "delivery"}, exclude_none=True)
