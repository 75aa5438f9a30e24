"""Server-side room engine: membership, history and message fan-out.

All mutable state lives in a ChatContext handed to ChatService at
construction. Handlers never block, so each one runs to completion against
the registries before the next event is processed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from backend import LocalBroadcaster
from constants import SYSTEM_USER
from history import RoomMessageStore
from logging_config import get_logger, short_address
from schemas.chat import (
    ChatMessage,
    InvalidSubmission,
    JoinedEvent,
    TypingEvent,
    build_message,
    decode_submission,
)
from sessions import Session, SessionRegistry

logger = get_logger(__name__)


def utc_timestamp() -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class ChatContext:
    sessions: SessionRegistry = field(default_factory=SessionRegistry)
    history: RoomMessageStore = field(default_factory=RoomMessageStore)
    broadcaster: LocalBroadcaster = field(default_factory=LocalBroadcaster)


class ChatService:
    def __init__(self, context: ChatContext, clock: Callable[[], str] = utc_timestamp):
        self.context = context
        self.clock = clock

    @property
    def sessions(self) -> SessionRegistry:
        return self.context.sessions

    @property
    def history(self) -> RoomMessageStore:
        return self.context.history

    @property
    def broadcaster(self) -> LocalBroadcaster:
        return self.context.broadcaster

    def system_message(self, text: str) -> ChatMessage:
        return ChatMessage(user=SYSTEM_USER, kind="text", payload=text, timestamp=self.clock())

    async def join(self, connection_id: str, room_address: str, desired_name: Optional[str] = None) -> Session:
        """Bind a connection to a room, replay history to it and announce it to the room."""
        session, previous = self.sessions.join(connection_id, room_address, desired_name)
        if previous is not None and previous.room_address != room_address:
            await self.broadcaster.unsubscribe(previous.room_address, connection_id)
            await self._announce(previous.room_address, f"{previous.display_name} has left the chat")

        self.history.ensure(room_address)
        await self.broadcaster.subscribe(room_address, connection_id)

        await self.broadcaster.send_to(
            connection_id, "history", [m.model_dump() for m in self.history.get_history(room_address)]
        )
        await self.broadcaster.send_to(connection_id, "joined", JoinedEvent(username=session.display_name).model_dump())
        await self._announce(room_address, f"{session.display_name} has joined the chat")

        logger.info(
            f"{session.display_name} joined room {short_address(room_address)} "
            f"({self.sessions.count(room_address)} members)"
        )
        return session

    async def leave(self, connection_id: str) -> Optional[Session]:
        """Disconnect handling. A connection that never joined is a no-op."""
        session = self.sessions.get(connection_id)
        if session is None:
            logger.debug(f"Connection {connection_id} left without a session")
            return None
        await self.broadcaster.unsubscribe(session.room_address, connection_id)
        await self._announce(session.room_address, f"{session.display_name} has left the chat")
        self.sessions.remove(connection_id)
        logger.info(f"{session.display_name} left room {short_address(session.room_address)}")
        return session

    async def chat_message(self, connection_id: str, raw: Any) -> Optional[ChatMessage]:
        session = self.sessions.get(connection_id)
        if session is None:
            logger.debug(f"Dropping chatMessage from connection {connection_id} without a session")
            return None
        try:
            submission = decode_submission(raw)
        except InvalidSubmission as e:
            logger.warning(f"Dropping malformed chatMessage from {connection_id}: {e}")
            return None

        message = build_message(submission, user=session.display_name, timestamp=self.clock())
        self.history.append(session.room_address, message)
        await self.broadcaster.broadcast(session.room_address, "message", message.model_dump())
        logger.debug(f"Routed {message.kind} message from {session.display_name} in room {short_address(session.room_address)}")
        return message

    async def typing(self, connection_id: str) -> None:
        await self._presence(connection_id, "userTyping")

    async def stop_typing(self, connection_id: str) -> None:
        await self._presence(connection_id, "userStoppedTyping")

    async def _presence(self, connection_id: str, event: str) -> None:
        session = self.sessions.get(connection_id)
        if session is None:
            return
        await self.broadcaster.broadcast(
            session.room_address,
            event,
            TypingEvent(username=session.display_name).model_dump(),
            exclude=connection_id,
        )

    async def _announce(self, room_address: str, text: str) -> None:
        await self.broadcaster.broadcast(room_address, "message", self.system_message(text).model_dump())
