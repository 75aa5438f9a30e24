from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from room_identity import is_room_address

RESERVED_FIELDS = ("user", "kind", "timestamp")


class ChatMessage(BaseModel):
    """A message as stored in history and sent on the wire.

    Extra fields from typed submissions are kept verbatim so encrypted
    payloads pass through without the server looking inside them.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    user: str
    kind: str = "text"
    payload: Any = None
    timestamp: str


class Frame(BaseModel):
    event: str
    data: Any = None


class JoinRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_address: str = Field(alias="roomAddress")
    desired_name: Optional[str] = Field(default=None, alias="desiredName")

    @field_validator("room_address")
    @classmethod
    def check_room_address(cls, value: str) -> str:
        if not is_room_address(value):
            raise ValueError("roomAddress must be a 64 character lowercase hex digest")
        return value


class JoinedEvent(BaseModel):
    username: str


class TypingEvent(BaseModel):
    username: str


class ErrorEvent(BaseModel):
    message: str


class InvalidSubmission(ValueError):
    pass


@dataclass(frozen=True)
class LegacyText:
    """Bare string chatMessage from older clients."""
    text: str


@dataclass(frozen=True)
class TypedPayload:
    kind: str
    fields: dict = field(default_factory=dict)


Submission = Union[LegacyText, TypedPayload]


def decode_submission(raw: Any) -> Submission:
    if isinstance(raw, str):
        return LegacyText(raw)
    if isinstance(raw, dict):
        kind = raw.get("kind", "text")
        if not isinstance(kind, str) or not kind:
            raise InvalidSubmission(f"Message kind must be a non-empty string, got {kind!r}")
        fields = {k: v for k, v in raw.items() if k not in RESERVED_FIELDS}
        return TypedPayload(kind=kind, fields=fields)
    raise InvalidSubmission(f"Unsupported chatMessage payload type: {type(raw).__name__}")


def build_message(submission: Submission, user: str, timestamp: str) -> ChatMessage:
    """Server-stamped message; user and timestamp always come from the server."""
    if isinstance(submission, LegacyText):
        return ChatMessage(user=user, kind="text", payload=submission.text, timestamp=timestamp)
    return ChatMessage.model_validate({**submission.fields, "user": user, "kind": submission.kind, "timestamp": timestamp})


def parse_join_request(data: Any) -> JoinRoomRequest:
    """joinRoom accepts a bare address string or {roomAddress, desiredName}."""
    if isinstance(data, str):
        return JoinRoomRequest(roomAddress=data)
    if isinstance(data, dict):
        return JoinRoomRequest.model_validate(data)
    raise ValueError("joinRoom expects an address string or an object")
