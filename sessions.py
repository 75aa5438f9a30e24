import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from constants import DISPLAY_NAME_MAX_LENGTH
from logging_config import get_logger, short_address

logger = get_logger(__name__)

ADJECTIVES = ["Happy", "Sleepy", "Grumpy", "Sneezy", "Dopey", "Bashful", "Doc", "Swift", "Silent", "Brave"]
ANIMALS = ["Badger", "Fox", "Owl", "Bear", "Raccoon", "Eagle", "Wolf", "Tiger", "Lion", "Hawk"]


def generate_username(rng: random.Random = None) -> str:
    rng = rng or random
    return f"Anonymous {rng.choice(ADJECTIVES)} {rng.choice(ANIMALS)}"


@dataclass(frozen=True)
class Session:
    connection_id: str
    display_name: str
    room_address: str


class SessionRegistry:
    """connection_id -> Session for every connection that has joined a room."""

    def __init__(self, rng: random.Random = None):
        self._sessions: Dict[str, Session] = {}
        self._rng = rng

    def join(self, connection_id: str, room_address: str, desired_name: Optional[str] = None) -> Tuple[Session, Optional[Session]]:
        """Create or replace the session for a connection. Returns (session, replaced_session)."""
        name = desired_name.strip()[:DISPLAY_NAME_MAX_LENGTH] if isinstance(desired_name, str) else ""
        if not name:
            name = generate_username(self._rng)
        previous = self._sessions.get(connection_id)
        session = Session(connection_id=connection_id, display_name=name, room_address=room_address)
        self._sessions[connection_id] = session
        logger.debug(f"Session for {connection_id} -> {name} in room {short_address(room_address)} (replaced={previous is not None})")
        return session, previous

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> Optional[Session]:
        """Drop a connection's session. Unknown connections are not an error."""
        return self._sessions.pop(connection_id, None)

    def members(self, room_address: str) -> List[Session]:
        return [s for s in self._sessions.values() if s.room_address == room_address]

    def count(self, room_address: str) -> int:
        return len(self.members(room_address))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions
