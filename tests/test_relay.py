"""
LAN Hub - Relay tests.

Exercises RelayState request handling directly and RelayServer over a real
loopback socket.
"""

import asyncio
import json

import pytest

from lanhub.errors import ErrorCode, TransportError
from lanhub.protocol import RequestType
from lanhub.relay import RelayServer, RelayState
from lanhub.transport import RelayClient


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


def call(state, request_type, payload=None):
    return state.handle({"type": request_type, "payload": payload or {}})


def register(state, user_id, is_admin=False):
    return call(state, "register_user", {
        "id": user_id, "username": user_id, "displayName": user_id.title(), "isAdmin": is_admin,
    })


def send(state, sender, content, message_id=None, room_id=None):
    payload = {"id": message_id or f"{sender}-{content}", "senderId": sender, "content": content}
    if room_id:
        payload["roomId"] = room_id
    return call(state, "send_message", payload)


def test_unknown_type_is_400(relay_state):
    response = call(relay_state, "bogus")
    assert response["status"] == 400
    assert response["error"]


def test_register_returns_roster_and_history(relay_state):
    register(relay_state, "alice")
    send(relay_state, "alice", "hello")

    response = register(relay_state, "bob")

    assert response["status"] == 200
    assert {u["id"] for u in response["onlineUsers"]} == {"alice", "bob"}
    assert [m["content"] for m in response["messages"]] == ["hello"]


def test_sequence_numbers_increase(relay_state):
    """The relay assigns strictly increasing sequence numbers."""
    seqs = [send(relay_state, "alice", f"m{i}")["message"]["seq"] for i in range(5)]
    assert seqs == [1, 2, 3, 4, 5]


def test_client_timestamp_preserved(relay_state):
    response = call(relay_state, "send_message", {
        "id": "m1", "senderId": "alice", "content": "hi", "timestamp": 1234,
    })
    assert response["message"]["timestamp"] == 1234


def test_heartbeat_returns_messages_after_cursor(relay_state):
    register(relay_state, "alice")
    for i in range(3):
        send(relay_state, "alice", f"m{i}")

    response = call(relay_state, "heartbeat", {"userId": "alice", "lastSeq": 1})

    assert [m["seq"] for m in response["newMessages"]] == [2, 3]
    assert response["lastSeq"] == 3


def test_history_is_bounded():
    state = RelayState(history_limit=3)
    for i in range(5):
        send(state, "alice", f"m{i}")

    response = call(state, "get_state")
    assert [m["content"] for m in response["messages"]] == ["m2", "m3", "m4"]
    assert response["lastSeq"] == 5


def test_key_updates_delivered_once(relay_state):
    register(relay_state, "bob")
    envelope = {"epk": "a", "salt": "b", "nonce": "c", "ciphertext": "d"}
    call(relay_state, "key_update", {"targetUserId": "bob", "fromUserId": "alice", "envelope": envelope})

    first = call(relay_state, "heartbeat", {"userId": "bob"})
    second = call(relay_state, "heartbeat", {"userId": "bob"})

    assert len(first["keyUpdates"]) == 1
    assert first["keyUpdates"][0]["fromUserId"] == "alice"
    assert first["keyUpdates"][0]["envelope"] == envelope
    assert second["keyUpdates"] == []


def test_key_update_with_non_string_envelope_is_400(relay_state):
    register(relay_state, "bob")
    envelope = {"epk": 1, "salt": 2, "nonce": 3, "ciphertext": 4}

    response = call(relay_state, "key_update", {"targetUserId": "bob", "fromUserId": "mallory", "envelope": envelope})

    assert response["status"] == 400
    assert "bob" not in relay_state.key_updates


def test_create_room_adds_owner(relay_state):
    response = call(relay_state, "create_room", {
        "id": "r1", "name": "Team", "createdBy": "alice", "participants": ["bob"],
    })

    room = response["rooms"][0]
    assert set(room["participants"]) == {"alice", "bob"}

    duplicate = call(relay_state, "create_room", {"id": "r1", "name": "Again", "createdBy": "bob"})
    assert duplicate["status"] == 400


def test_update_room_authorization(relay_state):
    call(relay_state, "create_room", {"id": "r1", "name": "Team", "createdBy": "alice", "participants": ["bob"]})

    missing = call(relay_state, "update_room", {"roomId": "nope", "byUserId": "alice", "addParticipant": "x"})
    refused = call(relay_state, "update_room", {"roomId": "r1", "byUserId": "bob", "addParticipant": "carol"})
    allowed = call(relay_state, "update_room", {"roomId": "r1", "byUserId": "alice", "addAdmin": "bob"})

    assert missing["status"] == 404
    assert refused["status"] == 403
    assert allowed["status"] == 200
    assert allowed["room"]["admins"] == ["bob"]


def test_delete_room(relay_state):
    call(relay_state, "create_room", {"id": "r1", "name": "Team", "createdBy": "alice", "participants": ["bob"]})

    assert call(relay_state, "delete_room", {"roomId": "r1", "byUserId": "bob"})["status"] == 403
    assert call(relay_state, "delete_room", {"roomId": "r1", "byUserId": "alice"})["rooms"] == []
    assert call(relay_state, "delete_room", {"roomId": "r1", "byUserId": "alice"})["status"] == 200


def init_transfer(state, recipients=None, total=2, sender="alice"):
    payload = {
        "id": "t1", "senderId": sender, "senderName": "Alice", "fileName": "f.bin",
        "fileSize": 10, "totalChunks": total,
    }
    if recipients is not None:
        payload["recipients"] = recipients
    return call(state, "init_file_transfer", payload)


def test_transfer_listing_respects_audience(relay_state):
    init_transfer(relay_state, recipients=["bob"])

    assert [t["id"] for t in call(relay_state, "list_file_transfers", {"userId": "bob"})["transfers"]] == ["t1"]
    assert call(relay_state, "list_file_transfers", {"userId": "carol"})["transfers"] == []
    assert call(relay_state, "list_file_transfers", {"userId": "alice"})["transfers"] == []


def test_empty_recipient_list_reaches_nobody(relay_state):
    init_transfer(relay_state, recipients=[])

    assert call(relay_state, "list_file_transfers", {"userId": "bob"})["transfers"] == []
    assert call(relay_state, "heartbeat", {"userId": "bob"})["fileAnnouncements"] == []


def test_broadcast_announced_in_heartbeat(relay_state):
    init_transfer(relay_state)

    announcements = call(relay_state, "heartbeat", {"userId": "bob"})["fileAnnouncements"]
    assert [a["id"] for a in announcements] == ["t1"]
    assert "recipients" not in announcements[0]
    assert call(relay_state, "heartbeat", {"userId": "alice"})["fileAnnouncements"] == []


def test_chunk_upload_and_download(relay_state):
    init_transfer(relay_state, recipients=["bob"])

    assert call(relay_state, "upload_chunk", {"transferId": "t1", "index": 5, "data": "x"})["status"] == 400
    assert call(relay_state, "upload_chunk", {"transferId": "zz", "index": 0, "data": "x"})["status"] == 400
    call(relay_state, "upload_chunk", {"transferId": "t1", "index": 1, "data": "b2s=", "nonce": "bm9uY2U="})

    listing = call(relay_state, "list_file_transfers", {"userId": "bob"})["transfers"][0]
    assert listing["availableChunks"] == [1]
    assert listing["completed"] is False

    chunk = call(relay_state, "download_file_chunk", {"userId": "bob", "transferId": "t1", "index": 1})
    assert chunk["data"] == "b2s="
    assert chunk["nonce"] == "bm9uY2U="

    not_ready = call(relay_state, "download_file_chunk", {"userId": "bob", "transferId": "t1", "index": 0})
    forbidden = call(relay_state, "download_file_chunk", {"userId": "carol", "transferId": "t1", "index": 1})
    unknown = call(relay_state, "download_file_chunk", {"userId": "bob", "transferId": "zz", "index": 0})
    assert not_ready["status"] == 404
    assert forbidden["status"] == 403
    assert unknown["status"] == 404


def test_transfer_completes_when_all_chunks_arrive(relay_state):
    init_transfer(relay_state, total=2)
    call(relay_state, "upload_chunk", {"transferId": "t1", "index": 0, "data": "YQ=="})
    call(relay_state, "upload_chunk", {"transferId": "t1", "index": 1, "data": "Yg=="})

    listing = call(relay_state, "list_file_transfers", {"userId": "bob"})["transfers"][0]
    assert listing["completed"] is True
    assert listing["availableChunks"] == [0, 1]


def test_prune_stale_users_and_devices():
    clock = FakeClock()
    state = RelayState(presence_timeout=35, clock=clock)
    register(state, "alice")
    register(state, "bob")
    call(state, "register_device", {"id": "device-bob", "userId": "bob"})

    clock.now += 20_000
    call(state, "heartbeat", {"userId": "alice"})
    clock.now += 20_000

    assert state.prune_stale() == 2
    assert set(state.users) == {"alice"}
    assert state.devices == {}


def test_reset_forgets_everything(relay_state):
    register(relay_state, "alice")
    send(relay_state, "alice", "hi")
    relay_state.reset()

    response = call(relay_state, "get_state")
    assert response["onlineUsers"] == []
    assert response["messages"] == []
    assert response["lastSeq"] == 0


@pytest.mark.asyncio
async def test_server_round_trip():
    """RelayClient talks to RelayServer over loopback."""
    server = RelayServer("127.0.0.1", 0, state=RelayState())
    assert await server.start()
    try:
        client = RelayClient("127.0.0.1", server.bound_port, timeout=5)

        await client.request(RequestType.REGISTER_USER, {"id": "alice", "username": "alice"})
        response = await client.request(RequestType.HEARTBEAT, {"userId": "alice", "lastSeq": 0})
        assert [u["id"] for u in response["onlineUsers"]] == ["alice"]

        with pytest.raises(TransportError) as exc:
            await client.request(RequestType.UPDATE_ROOM, {"roomId": "r1", "byUserId": "alice", "addAdmin": "x"})
        assert exc.value.status == 404
        assert exc.value.code == ErrorCode.E203_BAD_STATUS
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_server_rejects_invalid_json():
    server = RelayServer("127.0.0.1", 0, state=RelayState())
    assert await server.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.bound_port)
        writer.write(b"this is not json\n")
        await writer.drain()
        response = json.loads(await reader.readline())
        writer.close()
        await writer.wait_closed()
        assert response["status"] == 400
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_client_reports_unreachable_relay():
    server = RelayServer("127.0.0.1", 0, state=RelayState())
    assert await server.start()
    port = server.bound_port
    await server.stop()

    client = RelayClient("127.0.0.1", port, timeout=2)
    with pytest.raises(TransportError) as exc:
        await client.request(RequestType.GET_STATE)
    assert exc.value.code in (ErrorCode.E201_CONNECTION_FAILED, ErrorCode.E202_CONNECTION_TIMEOUT)
