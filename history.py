from collections import deque
from typing import Deque, Dict, List

from constants import HISTORY_LIMIT
from logging_config import get_logger, short_address
from schemas.chat import ChatMessage

logger = get_logger(__name__)


class RoomMessageStore:
    """Bounded in-memory history per room. Oldest messages are evicted first."""

    def __init__(self, limit: int = HISTORY_LIMIT):
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.limit = limit
        self._rooms: Dict[str, Deque[ChatMessage]] = {}

    def ensure(self, room_address: str) -> None:
        if room_address not in self._rooms:
            self._rooms[room_address] = deque(maxlen=self.limit)
            logger.debug(f"Created history buffer for room {short_address(room_address)}")

    def append(self, room_address: str, message: ChatMessage) -> None:
        self.ensure(room_address)
        # deque(maxlen=...) drops from the left once full
        self._rooms[room_address].append(message)

    def get_history(self, room_address: str) -> List[ChatMessage]:
        return list(self._rooms.get(room_address, ()))

    def size(self, room_address: str) -> int:
        return len(self._rooms.get(room_address, ()))

    def __contains__(self, room_address: str) -> bool:
        return room_address in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
