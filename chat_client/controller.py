"""Client-side controller for the rooms a user has open.

One room is active at a time. Activating a room tears down the previous
one (connection and key), derives address and key for the new phrase,
reconnects and asks the server for history. Every key carries the
generation it was created in; a decrypt that finishes after the
generation moved on is dropped instead of landing in the wrong transcript.
"""

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from constants import MAX_IMAGE_BYTES, PBKDF2_ITERATIONS, SYSTEM_USER
from logging_config import get_logger, short_address
from room_crypto import DecryptionFailed, NotReady, RoomCipher
from room_identity import derive_room_address

from chat_client.transport import Transport

logger = get_logger(__name__)

DECRYPTION_PLACEHOLDER = "[Unable to decrypt message]"


class AttachmentTooLarge(ValueError):
    pass


@dataclass(frozen=True)
class OpenRoom:
    room_address: str
    # The phrase doubles as the room's label in the room list; it never leaves the client
    label: str


@dataclass(frozen=True)
class RenderedMessage:
    user: str
    kind: str
    content: Optional[str]
    timestamp: Optional[str] = None
    own: bool = False
    system: bool = False
    failed: bool = False


class RoomController:
    def __init__(
        self,
        transport: Transport,
        display_name: Optional[str] = None,
        iterations: int = PBKDF2_ITERATIONS,
        max_image_bytes: int = MAX_IMAGE_BYTES,
    ):
        self.transport = transport
        self.transport.bind(self.handle_event)
        self.display_name = display_name
        self.iterations = iterations
        self.max_image_bytes = max_image_bytes

        self.rooms: Dict[str, OpenRoom] = {}
        self.active: Optional[OpenRoom] = None
        self.cipher: Optional[RoomCipher] = None
        self.generation = 0

        self.username: Optional[str] = None
        self.transcript: List[RenderedMessage] = []
        self.typing_users: Set[str] = set()

    @property
    def open_rooms(self) -> List[OpenRoom]:
        return list(self.rooms.values())

    async def join(self, phrase: str) -> OpenRoom:
        """Open (or re-activate) the room for a phrase and make it active."""
        phrase = phrase.strip() if isinstance(phrase, str) else ""
        if not phrase:
            raise ValueError("Secret phrase must not be empty")

        room_address = derive_room_address(phrase)
        room = self.rooms.setdefault(room_address, OpenRoom(room_address=room_address, label=phrase))

        await self._teardown()
        cipher = RoomCipher(generation=self.generation, iterations=self.iterations)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, cipher.derive_key, phrase)
        if cipher.generation != self.generation:
            # Another join or leave happened while the key was being derived
            cipher.clear()
            logger.debug(f"Discarding key for superseded join of {short_address(room_address)}")
            return room

        self.cipher = cipher
        self.active = room
        payload = {"roomAddress": room_address}
        if self.display_name:
            payload["desiredName"] = self.display_name
        try:
            await self.transport.connect()
            await self.transport.emit("joinRoom", payload)
        except Exception:
            await self._teardown()
            raise
        logger.info(f"Joined room {short_address(room_address)} (generation {self.generation})")
        return room

    async def leave(self) -> None:
        """Return to the neutral screen. The room stays in the open set."""
        await self._teardown()

    async def close_room(self, room_address: str) -> bool:
        """Forget a room. Leaves it first if it is the active one."""
        if self.active is not None and self.active.room_address == room_address:
            await self.leave()
        return self.rooms.pop(room_address, None) is not None

    async def send_text(self, text: str) -> Optional[Dict[str, Any]]:
        if not text or not text.strip():
            return None
        cipher = self._require_cipher()
        message = {"kind": "encrypted", "payload": cipher.encrypt(text).to_dict()}
        await self.transport.emit("chatMessage", message)
        return message

    async def send_image(self, data: bytes, mime_type: str) -> Dict[str, Any]:
        # Image payloads are sent as plain data URIs
        self._require_cipher()
        if not mime_type.startswith("image/"):
            raise ValueError(f"Not an image type: {mime_type}")
        if len(data) > self.max_image_bytes:
            raise AttachmentTooLarge(f"Image is {len(data)} bytes, the limit is {self.max_image_bytes}")
        data_uri = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
        message = {"kind": "image", "payload": data_uri}
        await self.transport.emit("chatMessage", message)
        return message

    async def typing(self) -> None:
        if self.active is not None:
            await self.transport.emit("typing")

    async def stop_typing(self) -> None:
        if self.active is not None:
            await self.transport.emit("stopTyping")

    async def handle_event(self, event: str, data: Any) -> List[RenderedMessage]:
        """Apply one server event to local state. Returns what was added to the transcript."""
        if event == "joined":
            self.username = data.get("username") if isinstance(data, dict) else None
            return []
        if event == "history":
            return await self._replay(data if isinstance(data, list) else [])
        if event == "message":
            rendered = await self.render(data)
            if rendered is None:
                return []
            self.transcript.append(rendered)
            return [rendered]
        if event in ("userTyping", "userStoppedTyping"):
            username = data.get("username") if isinstance(data, dict) else None
            if username and username != self.username:
                if event == "userTyping":
                    self.typing_users.add(username)
                else:
                    self.typing_users.discard(username)
            return []
        if event == "error":
            logger.warning(f"Server reported an error: {data}")
            return []
        logger.debug(f"Ignoring unknown event {event!r}")
        return []

    async def render(self, entry: Any) -> Optional[RenderedMessage]:
        """Turn a wire message into a transcript entry, or None if it belongs to a superseded room."""
        if not isinstance(entry, dict):
            return None
        user = str(entry.get("user", ""))
        kind = entry.get("kind", "text")
        # Messages from older servers carry their body under "text"
        payload = entry.get("payload", entry.get("text"))
        timestamp = entry.get("timestamp")

        if user == SYSTEM_USER:
            return RenderedMessage(user=user, kind="text", content=str(payload), timestamp=timestamp, system=True)

        own = self.username is not None and user == self.username
        if kind != "encrypted":
            content = payload if isinstance(payload, str) else ""
            return RenderedMessage(user=user, kind=kind, content=content, timestamp=timestamp, own=own)

        generation = self.generation
        cipher = self.cipher
        failed = False
        content = None
        try:
            if cipher is None:
                raise NotReady("No room key")
            loop = asyncio.get_running_loop()
            content = await loop.run_in_executor(None, cipher.decrypt, payload["ciphertext"], payload["iv"])
        except NotReady:
            if generation != self.generation:
                return None
            failed = True
        except (DecryptionFailed, KeyError, TypeError) as e:
            logger.debug(f"Could not decrypt message from {user}: {e}")
            failed = True
        if generation != self.generation:
            logger.debug(f"Discarding message decrypted under stale generation {generation}")
            return None
        return RenderedMessage(
            user=user,
            kind=kind,
            content=DECRYPTION_PLACEHOLDER if failed else content,
            timestamp=timestamp,
            own=own,
            failed=failed,
        )

    async def _replay(self, entries: List[Any]) -> List[RenderedMessage]:
        # One entry at a time, in order, so the transcript order matches the server's
        generation = self.generation
        self.transcript = []
        for entry in entries:
            rendered = await self.render(entry)
            if generation != self.generation:
                return []
            if rendered is not None:
                self.transcript.append(rendered)
        return list(self.transcript)

    async def _teardown(self) -> None:
        self.generation += 1
        if self.cipher is not None:
            self.cipher.clear()
            self.cipher = None
        if self.active is not None:
            logger.info(f"Leaving room {short_address(self.active.room_address)}")
            self.active = None
            await self.transport.disconnect()
        self.username = None
        self.transcript = []
        self.typing_users.clear()

    def _require_cipher(self) -> RoomCipher:
        if self.cipher is None or not self.cipher.is_ready:
            raise NotReady("No active room. Join a room before sending.")
        return self.cipher
