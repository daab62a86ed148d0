import asyncio

import pytest

from bubbly.internal.dispatch.dispatcher import MessageDispatcher
from bubbly.internal.routing.rooms import group_room_id, private_room_id
from bubbly.internal.storage.history import ChatHistory
from bubbly.tests.fakes import open_connection


@pytest.fixture
def alice(users):
    return users.add_user("alice", "pw1")


@pytest.fixture
def bob(users):
    return users.add_user("bob", "pw2")


def _text(sender, room, message_id, text="hi"):
    return {"text": text, "sender": sender.id, "senderUsername": sender.username,
            "room": room, "messageId": message_id}


def test_private_message_reaches_both_sides(manager, dispatcher, alice, bob):
    room = private_room_id(alice.id, bob.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        ack = await dispatcher.submit(_text(alice, room, "m1"), sender=alice_conn)
        return alice_conn, bob_conn, ack

    alice_conn, bob_conn, ack = asyncio.run(scenario())

    assert ack.to_dict() == {"success": True, "messageId": "m1", "duplicate": False}
    received = bob_conn.websocket.events("chatMessage")
    assert len(received) == 1
    assert received[0]["data"]["text"] == "hi"
    assert received[0]["data"]["sender"] == alice.id
    assert received[0]["data"]["messageId"] == "m1"
    # The sender's own connection is a room subscriber too
    assert [f["data"]["messageId"] for f in alice_conn.websocket.events("chatMessage")] == ["m1"]


def test_group_broadcast_reaches_each_subscriber_once(manager, dispatcher, groups, alice, bob):
    group = groups.create_group("G", alice.id, [bob.id])
    room = group_room_id(group.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        ack = await dispatcher.submit(_text(bob, room, "g1", "hello group"), sender=bob_conn)
        return alice_conn, bob_conn, ack

    alice_conn, bob_conn, ack = asyncio.run(scenario())

    assert ack.success
    assert len(alice_conn.websocket.events("chatMessage")) == 1
    assert len(bob_conn.websocket.events("chatMessage")) == 1


def test_disconnected_subscriber_does_not_break_delivery(manager, dispatcher, history, alice, bob):
    room = private_room_id(alice.id, bob.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        await manager.disconnect(alice_conn)
        ack = await dispatcher.submit(_text(bob, room, "m2", "anyone?"), sender=bob_conn)
        return alice_conn, ack

    alice_conn, ack = asyncio.run(scenario())

    assert ack.success
    assert alice_conn.websocket.events("chatMessage") == []
    assert [m["messageId"] for m in history.load(room)] == ["m2"]


def test_broken_socket_is_dropped_from_room(manager, dispatcher, alice, bob):
    room = private_room_id(alice.id, bob.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        alice_conn.websocket.closed = True
        ack = await dispatcher.submit(_text(bob, room, "m1"), sender=bob_conn)
        return bob_conn, ack

    bob_conn, ack = asyncio.run(scenario())

    assert ack.success
    assert manager.router.subscribers(room) == [bob_conn]


def test_resubmitting_same_message_id_is_idempotent(manager, dispatcher, history, alice, bob):
    room = private_room_id(alice.id, bob.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        first = await dispatcher.submit(_text(alice, room, "m1"), sender=alice_conn)
        second = await dispatcher.submit(_text(alice, room, "m1"), sender=alice_conn)
        return bob_conn, first, second

    bob_conn, first, second = asyncio.run(scenario())

    assert first.success and not first.duplicate
    assert second.success and second.duplicate
    assert len(history.load(room)) == 1
    assert len(bob_conn.websocket.events("chatMessage")) == 1


def test_missing_message_id_is_rejected(manager, dispatcher, history, alice):
    room = group_room_id("g1")

    async def scenario():
        conn = await open_connection(manager, alice)
        payload = {"text": "hi", "sender": alice.id, "room": room}
        return conn, await dispatcher.submit(payload, sender=conn)

    conn, ack = asyncio.run(scenario())

    assert not ack.success
    assert ack.code == "invalid"
    assert conn.websocket.events("errorMessage")[0]["data"]["code"] == "invalid"
    assert history.load(room) == []


def test_server_assigns_id_and_timestamp_when_allowed(history, manager, alice):
    dispatcher = MessageDispatcher(history, manager, require_message_id=False)
    room = group_room_id("g1")

    async def scenario():
        conn = await open_connection(manager, alice)
        return await dispatcher.submit({"text": "hi", "sender": alice.id, "room": room}, sender=conn)

    ack = asyncio.run(scenario())

    assert ack.success
    assert ack.messageId.startswith("srv_")
    stored = history.load(room)[0]
    assert stored["messageId"] == ack.messageId
    assert stored["timestamp"] > 0
    assert stored["senderUsername"] == "alice"


@pytest.mark.parametrize("payload", [
    {"sender": "someone-else", "text": "hi", "messageId": "m1"},
    {"text": "   ", "messageId": "m1"},
    {"type": "image", "text": "hi", "messageId": "m1"},
    {"type": "location", "messageId": "m1"},
])
def test_invalid_messages_are_rejected_before_persisting(manager, dispatcher, history, alice, payload):
    room = group_room_id("g1")

    async def scenario():
        conn = await open_connection(manager, alice)
        return await dispatcher.submit({"sender": alice.id, "room": room, **payload}, sender=conn)

    ack = asyncio.run(scenario())

    assert not ack.success
    assert ack.code == "invalid"
    assert history.load(room) == []


def test_unregistered_connection_cannot_send(manager, dispatcher, alice):
    async def scenario():
        conn = await open_connection(manager)
        return await dispatcher.submit(_text(alice, group_room_id("g1"), "m1"), sender=conn)

    assert asyncio.run(scenario()).code == "invalid"


def test_messages_are_stored_in_submission_order(manager, dispatcher, history, alice, bob):
    room = private_room_id(alice.id, bob.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        acks = await asyncio.gather(*[
            dispatcher.submit(_text(alice, room, f"m{i}", str(i)), sender=alice_conn)
            for i in range(5)
        ])
        return bob_conn, acks

    bob_conn, acks = asyncio.run(scenario())

    expected = [f"m{i}" for i in range(5)]
    assert all(ack.success for ack in acks)
    assert [m["messageId"] for m in history.load(room)] == expected
    assert [f["data"]["messageId"] for f in bob_conn.websocket.events("chatMessage")] == expected


def test_history_bound_applies_to_dispatch(store, manager, alice):
    history = ChatHistory(store, limit=2)
    dispatcher = MessageDispatcher(history, manager)
    room = group_room_id("g1")

    async def scenario():
        conn = await open_connection(manager, alice)
        for i in range(3):
            await dispatcher.submit(_text(alice, room, f"m{i}"), sender=conn)

    asyncio.run(scenario())

    assert [m["messageId"] for m in dispatcher.history.load(room)] == ["m1", "m2"]


def test_store_failure_is_reported_to_sender(manager, dispatcher, store, alice, bob, monkeypatch):
    room = private_room_id(alice.id, bob.id)
    monkeypatch.setattr(store, "save", lambda name, records: False)

    async def scenario():
        alice_conn = await open_connection(manager)
        bob_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        await manager.join(bob_conn, room, bob.id, "bob")
        ack = await dispatcher.submit(_text(alice, room, "m1"), sender=alice_conn)
        return alice_conn, bob_conn, ack

    alice_conn, bob_conn, ack = asyncio.run(scenario())

    assert ack.to_dict() == {"success": False, "messageId": "m1",
                             "error": f"Failed to save chat message for room {room}",
                             "code": "store_failure"}
    assert alice_conn.websocket.events("errorMessage")[0]["data"]["messageId"] == "m1"
    assert bob_conn.websocket.events("chatMessage") == []


def test_direct_push_outside_the_room(manager, dispatcher, alice, bob):
    room = private_room_id(alice.id, bob.id)

    async def scenario():
        alice_conn = await open_connection(manager)
        await manager.join(alice_conn, room, alice.id, "alice")
        unreachable = await dispatcher.submit(_text(alice, room, "m1"), sender=alice_conn, recipient_id=bob.id)

        bob_conn = await open_connection(manager, bob)
        direct = await dispatcher.submit(_text(alice, room, "m2"), sender=alice_conn, recipient_id=bob.id)

        await manager.join(bob_conn, room, bob.id, "bob")
        in_room = await dispatcher.submit(_text(alice, room, "m3"), sender=alice_conn, recipient_id=bob.id)
        return bob_conn, unreachable, direct, in_room

    bob_conn, unreachable, direct, in_room = asyncio.run(scenario())

    assert unreachable.success and unreachable.delivery == "unreachable"
    assert direct.delivery == "direct"
    assert in_room.delivery == "room"
    assert [f["data"]["messageId"] for f in bob_conn.websocket.events("chatMessage")] == ["m2", "m3"]


def test_location_message_is_broadcast_as_location(manager, dispatcher, history, alice):
    room = group_room_id("g1")

    async def scenario():
        conn = await open_connection(manager)
        await manager.join(conn, room, alice.id, "alice")
        payload = {"type": "location", "sender": alice.id, "room": room, "messageId": "loc1",
                   "latitude": 1.5, "longitude": 2.5, "url": "https://google.com/maps?q=1.5,2.5"}
        return conn, await dispatcher.submit(payload, sender=conn)

    conn, ack = asyncio.run(scenario())

    assert ack.success
    frame = conn.websocket.events("locationMessage")[0]
    assert frame["data"]["url"] == "https://google.com/maps?q=1.5,2.5"
    assert "text" not in frame["data"]
    assert history.load(room)[0]["type"] == "location"


def test_room_locks_are_released_when_idle(manager, dispatcher, alice, bob):
    rooms = [private_room_id(alice.id, bob.id), group_room_id("g1"), group_room_id("g2")]

    async def scenario():
        conn = await open_connection(manager, alice)
        acks = await asyncio.gather(*[
            dispatcher.submit(_text(alice, room, f"{room}-{i}"), sender=conn)
            for room in rooms for i in range(3)
        ])
        return acks

    acks = asyncio.run(scenario())

    assert all(ack.success for ack in acks)
    assert dispatcher._room_locks == {}
    assert dispatcher._room_waiters == {}
