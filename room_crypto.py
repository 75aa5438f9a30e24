"""Client-side room encryption.

The room key comes from the same phrase as the room address. The PBKDF2 salt is
the first bytes of SHA-256(phrase), so two clients that know the phrase arrive at
the identical key without exchanging anything. Payloads are AES-256-GCM with a
fresh 96-bit IV per message, carried as base64 next to the ciphertext.
"""

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from constants import IV_LENGTH, KEY_LENGTH, PBKDF2_ITERATIONS, SALT_LENGTH


class NotReady(RuntimeError):
    """Raised when encrypt/decrypt is used before a key has been derived."""


class DecryptionFailed(Exception):
    """Wrong phrase, tampered or corrupted payload."""


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: str

    def to_dict(self) -> dict:
        return {"ciphertext": self.ciphertext, "iv": self.iv}


def phrase_salt(phrase: str) -> bytes:
    return hashlib.sha256(phrase.encode("utf-8")).digest()[:SALT_LENGTH]


def derive_key_bytes(phrase: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derives a 256-bit key from a phrase using PBKDF2HMAC with a phrase-bound salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=phrase_salt(phrase),
        iterations=iterations,
    )
    return kdf.derive(phrase.encode("utf-8"))


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


class RoomCipher:
    """Key holder for one active room session.

    Uninitialized until derive_key() runs, Ready afterwards, and back to
    Uninitialized after clear(). The generation is assigned by the owner so
    results computed with a superseded key can be told apart.
    """

    def __init__(self, generation: int = 0, iterations: int = PBKDF2_ITERATIONS):
        self.generation = generation
        self.iterations = iterations
        self._aesgcm: Optional[AESGCM] = None
        self._phrase: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self._aesgcm is not None

    def derive_key(self, phrase: str) -> "RoomCipher":
        self._aesgcm = AESGCM(derive_key_bytes(phrase, self.iterations))
        self._phrase = phrase
        return self

    def encrypt(self, plaintext: str) -> EncryptedPayload:
        aesgcm = self._require_key()
        iv = os.urandom(IV_LENGTH)
        ciphertext = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedPayload(ciphertext=b64e(ciphertext), iv=b64e(iv))

    def decrypt(self, ciphertext: str, iv: str) -> str:
        aesgcm = self._require_key()
        try:
            raw_iv = b64d(iv)
            raw_ciphertext = b64d(ciphertext)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionFailed("Payload is not valid base64") from e
        if len(raw_iv) != IV_LENGTH:
            raise DecryptionFailed(f"IV must be {IV_LENGTH} bytes, got {len(raw_iv)}")
        try:
            plaintext = aesgcm.decrypt(raw_iv, raw_ciphertext, None)
        except InvalidTag as e:
            raise DecryptionFailed("Failed to decrypt message. Wrong key or corrupted data.") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Decrypted payload is not UTF-8") from e

    def clear(self) -> None:
        self._aesgcm = None
        self._phrase = None

    def _require_key(self) -> AESGCM:
        if self._aesgcm is None:
            raise NotReady("Key not derived. Join a room first.")
        return self._aesgcm
