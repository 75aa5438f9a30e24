import asyncio

import pytest
from fastapi.testclient import TestClient

from app import app, close_connection
from backend import LocalBroadcaster
from chat import ChatContext, ChatService
from fakes import FakeSocket
from history import RoomMessageStore
from room_identity import derive_room_address

ROOM = derive_room_address("red-panda")


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def join(ws, room_address=ROOM, name=None):
    data = {"roomAddress": room_address}
    if name:
        data["desiredName"] = name
    ws.send_json({"event": "joinRoom", "data": data})
    history = ws.receive_json()
    joined = ws.receive_json()
    announcement = ws.receive_json()
    assert history["event"] == "history"
    assert joined["event"] == "joined"
    assert announcement["event"] == "message"
    return history["data"], joined["data"]["username"], announcement["data"]


class TestHttp:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_unknown_room_is_404(self, client):
        response = client.get(f"/rooms/{derive_room_address('nobody-here')}")
        assert response.status_code == 404

    def test_malformed_address_is_400(self, client):
        response = client.get("/rooms/not-a-digest")
        assert response.status_code == 400


class TestWebSocket:
    def test_join_and_chat(self, client):
        with client.websocket_connect("/ws") as alice:
            history, username, announcement = join(alice, name="alice")
            assert history == []
            assert username == "alice"
            assert announcement["user"] == "System"
            assert announcement["payload"] == "alice has joined the chat"

            alice.send_json({"event": "chatMessage", "data": "hello"})
            message = alice.receive_json()
            assert message["event"] == "message"
            assert message["data"]["user"] == "alice"
            assert message["data"]["kind"] == "text"
            assert message["data"]["payload"] == "hello"
            assert message["data"]["timestamp"].endswith("Z")

            details = client.get(f"/rooms/{ROOM}").json()
            assert details == {"room_address": ROOM, "online_users_count": 1, "history_size": 1}

    def test_legacy_join_payload(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "joinRoom", "data": ROOM})
            assert ws.receive_json() == {"event": "history", "data": []}
            assert ws.receive_json()["data"]["username"].startswith("Anonymous ")

    def test_second_member_sees_history_typing_and_leave(self, client):
        with client.websocket_connect("/ws") as alice:
            join(alice, name="alice")
            encrypted = {"kind": "encrypted", "payload": {"ciphertext": "Y2lwaGVy", "iv": "aXZpdml2aXZpdg=="}}
            alice.send_json({"event": "chatMessage", "data": encrypted})
            alice.receive_json()

            with client.websocket_connect("/ws") as bob:
                history, _, _ = join(bob, name="bob")
                assert len(history) == 1
                assert history[0]["kind"] == "encrypted"
                assert history[0]["payload"] == encrypted["payload"]

                assert alice.receive_json()["data"]["payload"] == "bob has joined the chat"

                bob.send_json({"event": "typing"})
                assert alice.receive_json() == {"event": "userTyping", "data": {"username": "bob"}}
                bob.send_json({"event": "stopTyping"})
                assert alice.receive_json() == {"event": "userStoppedTyping", "data": {"username": "bob"}}

            left = alice.receive_json()
            assert left["data"]["user"] == "System"
            assert left["data"]["payload"] == "bob has left the chat"

    def test_malformed_frames_get_an_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["event"] == "error"
            ws.send_json({"event": "joinRoom", "data": {"roomAddress": "nope"}})
            assert ws.receive_json() == {"event": "error", "data": {"message": "Invalid joinRoom payload"}}

    def test_message_before_join_is_dropped(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "chatMessage", "data": "anyone?"})
            ws.send_json({"event": "joinRoom", "data": {"roomAddress": ROOM}})
            # The first thing back is the join reply, nothing for the dropped message
            assert ws.receive_json() == {"event": "history", "data": []}


class BrokenLeaveService(ChatService):
    async def leave(self, connection_id: str) -> None:
        raise RuntimeError("leave blew up")


class TestCloseConnection:
    def test_socket_is_unregistered_even_if_leave_fails(self):
        async def scenario():
            context = ChatContext(history=RoomMessageStore(limit=10), broadcaster=LocalBroadcaster())
            service = BrokenLeaveService(context)
            service.broadcaster.register("c1", FakeSocket())
            await service.broadcaster.subscribe(ROOM, "c1")
            await close_connection(service, "c1")
            assert service.broadcaster.connections == {}
            assert service.broadcaster.channels == {}

        asyncio.run(scenario())
