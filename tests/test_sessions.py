import random
import re

from sessions import ADJECTIVES, ANIMALS, SessionRegistry, generate_username

ROOM = "a" * 64
OTHER_ROOM = "b" * 64


class TestGenerateUsername:
    def test_format(self):
        rng = random.Random(1)
        for _ in range(50):
            name = generate_username(rng)
            match = re.fullmatch(r"Anonymous (\w+) (\w+)", name)
            assert match
            assert match.group(1) in ADJECTIVES
            assert match.group(2) in ANIMALS


class TestSessionRegistry:
    def test_join_with_desired_name(self):
        registry = SessionRegistry()
        session, previous = registry.join("c1", ROOM, "  alice ")
        assert session.display_name == "alice"
        assert session.room_address == ROOM
        assert previous is None
        assert registry.get("c1") == session

    def test_blank_name_is_generated(self):
        registry = SessionRegistry(rng=random.Random(3))
        session, _ = registry.join("c1", ROOM, "   ")
        assert session.display_name.startswith("Anonymous ")
        session, _ = registry.join("c2", ROOM, None)
        assert session.display_name.startswith("Anonymous ")

    def test_long_name_is_truncated(self):
        registry = SessionRegistry()
        session, _ = registry.join("c1", ROOM, "x" * 100)
        assert len(session.display_name) == 32

    def test_join_replaces_existing_session(self):
        registry = SessionRegistry()
        first, _ = registry.join("c1", ROOM, "alice")
        second, previous = registry.join("c1", OTHER_ROOM, "alice")
        assert previous == first
        assert registry.get("c1") == second
        assert len(registry) == 1

    def test_duplicate_names_allowed(self):
        registry = SessionRegistry()
        registry.join("c1", ROOM, "alice")
        registry.join("c2", ROOM, "alice")
        assert [s.display_name for s in registry.members(ROOM)] == ["alice", "alice"]
        assert registry.count(ROOM) == 2

    def test_remove_unknown_is_noop(self):
        registry = SessionRegistry()
        assert registry.remove("never-joined") is None
        assert len(registry) == 0

    def test_remove(self):
        registry = SessionRegistry()
        registry.join("c1", ROOM, "alice")
        registry.join("c2", OTHER_ROOM, "bob")
        assert registry.remove("c1").display_name == "alice"
        assert "c1" not in registry
        assert registry.count(ROOM) == 0
        assert registry.count(OTHER_ROOM) == 1
