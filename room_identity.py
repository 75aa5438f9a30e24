import hashlib
import re

ROOM_ADDRESS_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def derive_room_address(phrase: str) -> str:
    """Public room address for a secret phrase: lowercase hex SHA-256 of its UTF-8 bytes."""
    return hashlib.sha256(phrase.encode("utf-8")).hexdigest()


def is_room_address(value) -> bool:
    return isinstance(value, str) and bool(ROOM_ADDRESS_PATTERN.match(value))
