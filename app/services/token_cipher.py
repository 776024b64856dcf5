"""
Token encryption for stored OAuth credentials.

Stored form is ``enc:gcm:<base64 iv>:<base64 ciphertext>`` (AES-GCM, 12 byte IV,
ciphertext includes the auth tag). Rows written before encryption was introduced
hold the bare token; those parse as PlaintextToken and pass through unchanged.
"""
import base64
import binascii
import hashlib
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings
from app.services.errors import ConfigMissing, DecryptFailure, InvalidTokenFormat

TAG_PREFIX = "enc:"
VERSION_TAG = "gcm"
IV_LENGTH = 12
_VALID_KEY_LENGTHS = (16, 24, 32)


@dataclass(frozen=True)
class PlaintextToken:
    value: str


@dataclass(frozen=True)
class TaggedToken:
    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        iv = base64.b64encode(self.iv).decode("ascii")
        ct = base64.b64encode(self.ciphertext).decode("ascii")
        return f"{TAG_PREFIX}{VERSION_TAG}:{iv}:{ct}"


StoredToken = Union[PlaintextToken, TaggedToken]


def load_key(raw: Optional[str] = None) -> bytes:
    """
    Build an AES key from configuration. Accepts base64 or hex encoded 16/24/32
    byte keys; any other non-empty string is hashed with SHA-256.
    """
    raw = (raw if raw is not None else settings.TOKENS_ENCRYPTION_KEY or "").strip()
    if not raw:
        raise ConfigMissing("TOKENS_ENCRYPTION_KEY is not set")
    # Pure hex of a valid length wins over base64 (hex digits are also base64 alphabet)
    if len(raw) // 2 in _VALID_KEY_LENGTHS and len(raw) % 2 == 0:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    try:
        decoded = base64.b64decode(raw, validate=True)
        if len(decoded) in _VALID_KEY_LENGTHS:
            return decoded
    except (binascii.Error, ValueError):
        pass
    return hashlib.sha256(raw.encode("utf-8")).digest()


def parse_token(value: str) -> StoredToken:
    """Classify a stored value. Anything starting with enc: must be a well-formed tagged token."""
    if not value.startswith(TAG_PREFIX):
        return PlaintextToken(value)
    parts = value.split(":")
    if len(parts) != 4 or parts[1] != VERSION_TAG:
        raise InvalidTokenFormat("Invalid encrypted token format")
    try:
        iv = base64.b64decode(parts[2], validate=True)
        ct = base64.b64decode(parts[3], validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidTokenFormat(f"Invalid encrypted token encoding: {e}") from e
    if len(iv) != IV_LENGTH:
        raise InvalidTokenFormat("Invalid encrypted token IV length")
    return TaggedToken(iv=iv, ciphertext=ct)


def encrypt_token(key: bytes, plaintext: str) -> str:
    """Encrypt with a fresh random IV. Empty and unicode strings are supported."""
    iv = os.urandom(IV_LENGTH)
    ct = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return TaggedToken(iv=iv, ciphertext=ct).serialize()


def decrypt_token(key: bytes, value: str) -> str:
    token = parse_token(value)
    if isinstance(token, PlaintextToken):
        return token.value
    try:
        return AESGCM(key).decrypt(token.iv, token.ciphertext, None).decode("utf-8")
    except InvalidTag as e:
        raise DecryptFailure("Token authentication failed (wrong key or tampered value)") from e
    except UnicodeDecodeError as e:
        raise DecryptFailure("Decrypted token is not valid UTF-8") from e
