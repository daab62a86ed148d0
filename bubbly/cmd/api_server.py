import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from bubbly.broadcaster import Connection, ConnectionManager
from bubbly.config import AppConfig, app_config
from bubbly.internal.directory.groups import GroupDirectory
from bubbly.internal.directory.users import UserDirectory
from bubbly.internal.dispatch.dispatcher import MessageDispatcher
from bubbly.internal.domain.errors import ChatError, Invalid, NotFound
from bubbly.internal.domain.models import Acknowledgment, Group, MessageType
from bubbly.internal.routing.rooms import group_id_from_room, group_room_id, is_group_room, private_room_id
from bubbly.internal.storage.history import ChatHistory, validate_room_id
from bubbly.internal.storage.json_store import JsonStore


# Request models
class Credentials(BaseModel):
    username: str
    password: str


class UserUpdate(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class FriendRequest(BaseModel):
    userId: str
    friendIdentifier: str


class GroupCreate(BaseModel):
    name: str
    creatorId: str
    memberIds: List[str] = Field(default_factory=list)


class MemberAdd(BaseModel):
    userId: str


class ChatContext:
    """Everything a request or event handler needs, owned by one server process."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.store = JsonStore(config.get_data_dir(), cache_enabled=config.is_cache_enabled(),
                               max_cached_documents=config.get_max_cached_documents())
        self.history = ChatHistory(self.store, config.get_history_limit())
        self.users = UserDirectory(self.store)
        self.groups = GroupDirectory(self.store, self.users)
        self.manager = ConnectionManager(self.history)
        self.dispatcher = MessageDispatcher(self.history, self.manager,
                                            require_message_id=config.requires_message_id())


EventHandler = Callable[[ChatContext, Connection, Dict[str, Any]], Awaitable[Dict[str, Any]]]


def _require(data: Dict[str, Any], *fields: str) -> None:
    missing = [field for field in fields if not data.get(field)]
    if missing:
        raise Invalid(f"Missing required fields: {', '.join(missing)}")


def _text_field(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if value is not None and not isinstance(value, str):
        raise Invalid(f"{field} must be a string")
    return value


def _identify(ctx: ChatContext, connection: Connection, data: Dict[str, Any]):
    """Resolve the user a join or register event speaks for."""
    user_id = _text_field(data, "userId") or connection.user_id
    if not user_id:
        raise Invalid("userId is required")
    user = ctx.users.find_by_id(user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user.id, _text_field(data, "username") or user.username


async def _check_group_member(ctx: ChatContext, user_id: str, group_id: str) -> Group:
    group = await asyncio.to_thread(ctx.groups.get, group_id)
    if user_id not in group.members:
        raise Invalid(f"User {user_id} is not a member of group {group.id}")
    return group


# --- Event channel handlers ---
async def on_register_user(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    user_id, username = await asyncio.to_thread(_identify, ctx, connection, data)
    ctx.manager.register(connection, user_id, username)
    await ctx.manager.send_personal_message(connection, "registered", {"userId": user_id, "username": username})
    return {"success": True, "userId": user_id}


async def on_join_room(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    user_id, username = await asyncio.to_thread(_identify, ctx, connection, data)
    room = _text_field(data, "room")
    friend_id = _text_field(data, "friendId")
    if not room and friend_id:
        room = private_room_id(user_id, friend_id)
    if not room:
        raise Invalid("room or friendId is required")
    validate_room_id(room)
    group_id = group_id_from_room(room)
    if group_id:
        await _check_group_member(ctx, user_id, group_id)
    history = await ctx.manager.join(connection, room, user_id, username)
    return {"success": True, "room": room, "historySize": len(history)}


async def on_leave_room(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    _require(data, "room")
    room = _text_field(data, "room")
    validate_room_id(room)
    return {"success": True, "room": room, "left": ctx.manager.leave(connection, room)}


async def on_join_group_room(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    _require(data, "groupId")
    group_id = _text_field(data, "groupId")
    user_id, username = await asyncio.to_thread(_identify, ctx, connection, data)
    group = await _check_group_member(ctx, user_id, group_id)
    room = group_room_id(group.id)
    history = await ctx.manager.join(connection, room, user_id, username)
    return {"success": True, "room": room, "historySize": len(history)}


async def _submit(ctx: ChatContext, connection: Connection, payload: Dict[str, Any]) -> Dict[str, Any]:
    room = _text_field(payload, "room")
    if room:
        validate_room_id(room)
        group_id = group_id_from_room(room)
        if group_id and connection.user_id:
            await _check_group_member(ctx, connection.user_id, group_id)
    ack: Acknowledgment = await ctx.dispatcher.submit(payload, sender=connection,
                                                      recipient_id=_text_field(payload, "recipientId"))
    return ack.to_dict()


async def on_chat_message(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    return await _submit(ctx, connection, {**data, "type": MessageType.TEXT.value})


async def on_send_location(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        latitude = float(data["latitude"])
        longitude = float(data["longitude"])
    except (KeyError, TypeError, ValueError):
        raise Invalid("Numeric latitude and longitude are required")
    url = ctx.config.get_location_url_template().format(latitude=latitude, longitude=longitude)
    payload = {**data, "type": MessageType.LOCATION.value, "latitude": latitude, "longitude": longitude, "url": url}
    return await _submit(ctx, connection, payload)


async def on_voice_message(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    return await _submit(ctx, connection, {**data, "type": MessageType.VOICE.value})


async def on_group_voice_message(ctx: ChatContext, connection: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
    group_id = _text_field(data, "groupId")
    room = _text_field(data, "room") or (group_room_id(group_id) if group_id else None)
    if not room or not is_group_room(room):
        raise Invalid("groupVoiceMessage requires a group room")
    return await on_voice_message(ctx, connection, {**data, "room": room})


EVENT_HANDLERS: Dict[str, EventHandler] = {
    "registerUser": on_register_user,
    "joinRoom": on_join_room,
    "leaveRoom": on_leave_room,
    "joinGroupRoom": on_join_group_room,
    "chatMessage": on_chat_message,
    "sendLocation": on_send_location,
    "voiceMessage": on_voice_message,
    "groupVoiceMessage": on_group_voice_message,
}


async def handle_frame(ctx: ChatContext, connection: Connection, raw: str) -> None:
    """Decode one inbound frame, run its handler and answer its ``ackId`` if it has one."""
    try:
        frame = json.loads(raw)
    except ValueError:
        await ctx.manager.send_personal_message(connection, "errorMessage", {"error": "Malformed frame", "code": Invalid.code})
        return
    if not isinstance(frame, dict):
        await ctx.manager.send_personal_message(connection, "errorMessage", {"error": "Malformed frame", "code": Invalid.code})
        return

    event = frame.get("event")
    data = frame.get("data") or {}
    ack_id = frame.get("ackId")

    try:
        handler = EVENT_HANDLERS.get(event) if isinstance(event, str) else None
        if handler is None:
            raise Invalid(f"Unknown event: {event}")
        if not isinstance(data, dict):
            raise Invalid("Event data must be an object")
        result = await handler(ctx, connection, data)
    except ChatError as e:
        logger.warning(f"Event '{event}' from connection {connection.id} failed: {e.message}")
        result = e.to_dict()
        await ctx.manager.send_personal_message(connection, "errorMessage", {"event": event, "error": e.message, "code": e.code})
    except Exception as e:
        logger.error(f"Event '{event}' from connection {connection.id} raised: {e}", exc_info=True)
        result = {"success": False, "error": "Internal server error", "code": "error"}
        await ctx.manager.send_personal_message(connection, "errorMessage", {"event": event, "error": result["error"], "code": result["code"]})

    if ack_id is not None:
        try:
            await connection.send_ack(ack_id, result)
        except Exception as e:
            # The sender is gone; whatever was persisted stays persisted
            logger.warning(f"Could not acknowledge '{event}' to connection {connection.id}: {e}")


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or app_config
    ctx = ChatContext(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx.store.ensure_layout()
        logger.info(f"Chat server ready, data directory: {ctx.store.data_dir}")
        yield
        logger.info("Chat server shutting down...")

    app = FastAPI(
        title="Bubbly Chat",
        description="Multi-room chat with friends, groups and persisted history",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Users ---
    @app.post("/api/users/register")
    async def register(credentials: Credentials):
        user = await asyncio.to_thread(ctx.users.add_user, credentials.username, credentials.password)
        return {"success": True, "user": user.public()}

    @app.post("/api/users/login")
    async def login(credentials: Credentials):
        user = await asyncio.to_thread(ctx.users.authenticate, credentials.username, credentials.password)
        logger.info(f"User {user.username} logged in")
        return {"success": True, "user": user.public()}

    @app.post("/api/users/add-friend")
    async def add_friend(request: FriendRequest):
        friend = await asyncio.to_thread(ctx.users.resolve, request.friendIdentifier)
        user, friend = await asyncio.to_thread(ctx.users.add_friendship, request.userId, friend.id)
        await ctx.manager.send_to_user(friend.id, "friendAdded", {
            "addedByUserId": user.id,
            "addedByUsername": user.username,
            "message": f"{user.username} added you as a friend!",
        })
        return {"success": True, "user": user.public(), "friend": friend.public()}

    @app.get("/api/users/{user_id}")
    async def get_user(user_id: str):
        user = await asyncio.to_thread(ctx.users.get_profile, user_id)
        return {"success": True, "user": user.public()}

    @app.patch("/api/users/{user_id}")
    async def update_user(user_id: str, update: UserUpdate):
        user = await asyncio.to_thread(ctx.users.update_user, user_id, update.username, update.password)
        return {"success": True, "user": user.public()}

    @app.get("/api/users/{user_id}/groups")
    async def get_user_groups(user_id: str):
        await asyncio.to_thread(ctx.users.get, user_id)
        groups = await asyncio.to_thread(ctx.groups.get_user_groups, user_id)
        return {"success": True, "groups": [group.model_dump() for group in groups]}

    # --- Groups ---
    @app.post("/api/groups")
    async def create_group(request: GroupCreate):
        group = await asyncio.to_thread(ctx.groups.create_group, request.name, request.creatorId, request.memberIds)
        for member_id in group.members:
            if member_id != group.creatorId:
                await ctx.manager.send_to_user(member_id, "groupCreated", {"group": group.model_dump()})
        return {"success": True, "group": group.model_dump()}

    @app.get("/api/groups/{group_id}")
    async def get_group(group_id: str):
        group = await asyncio.to_thread(ctx.groups.get, group_id)
        return {"success": True, "group": group.model_dump()}

    @app.post("/api/groups/{group_id}/members")
    async def add_group_member(group_id: str, request: MemberAdd):
        group = await asyncio.to_thread(ctx.groups.add_member, group_id, request.userId)
        user = await asyncio.to_thread(ctx.users.get, request.userId)
        await ctx.manager.send_to_user(user.id, "addedToGroup", {"group": group.model_dump()})
        notice = {"groupId": group.id, "userId": user.id, "username": user.username}
        for member_id in group.members:
            if member_id != user.id:
                await ctx.manager.send_to_user(member_id, "memberAddedToGroup", notice)
        return {"success": True, "group": group.model_dump()}

    # --- History ---
    @app.get("/api/chat/{room}")
    async def get_chat_history(room: str):
        validate_room_id(room)
        history = await ctx.dispatcher.load_history(room)
        return {"success": True, "room": room, "history": history}

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "connections": len(ctx.manager.active_connections),
            "registeredUsers": len(ctx.manager.registry),
        }

    # --- Event channel ---
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        connection = await ctx.manager.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await handle_frame(ctx, connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await ctx.manager.disconnect(connection)

    return app


app = create_app()


# --- Main Execution ---
if __name__ == "__main__":
    logger.info(f"Starting Uvicorn API server on {app_config.get_api_host()}:{app_config.get_api_port()}")
    uvicorn.run(app, host=app_config.get_api_host(), port=app_config.get_api_port())
