import pytest

from history import RoomMessageStore
from schemas.chat import ChatMessage

ROOM = "a" * 64


def message(n: int) -> ChatMessage:
    return ChatMessage(user="alice", kind="text", payload=f"message #{n}", timestamp=f"t{n}")


class TestRoomMessageStore:
    def test_unknown_room_has_empty_history(self):
        store = RoomMessageStore()
        assert store.get_history(ROOM) == []
        assert ROOM not in store

    def test_ensure_creates_lazily(self):
        store = RoomMessageStore()
        store.ensure(ROOM)
        assert ROOM in store
        assert store.get_history(ROOM) == []

    def test_keeps_receipt_order(self):
        store = RoomMessageStore()
        for n in range(1, 6):
            store.append(ROOM, message(n))
        assert [m.payload for m in store.get_history(ROOM)] == [f"message #{n}" for n in range(1, 6)]

    def test_101st_message_evicts_the_first(self):
        store = RoomMessageStore()
        for n in range(1, 102):
            store.append(ROOM, message(n))
        history = store.get_history(ROOM)
        assert len(history) == 100
        assert history[0].payload == "message #2"
        assert history[-1].payload == "message #101"

    def test_many_appends_keep_last_hundred(self):
        store = RoomMessageStore()
        for n in range(1, 351):
            store.append(ROOM, message(n))
            assert store.size(ROOM) <= 100
        assert [m.payload for m in store.get_history(ROOM)] == [f"message #{n}" for n in range(251, 351)]

    def test_rooms_are_independent(self):
        store = RoomMessageStore(limit=3)
        store.append(ROOM, message(1))
        store.append("b" * 64, message(2))
        assert [m.payload for m in store.get_history(ROOM)] == ["message #1"]
        assert len(store) == 2

    def test_history_is_a_copy(self):
        store = RoomMessageStore()
        store.append(ROOM, message(1))
        store.get_history(ROOM).clear()
        assert store.size(ROOM) == 1

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            RoomMessageStore(limit=0)
