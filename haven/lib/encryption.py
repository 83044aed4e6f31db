"""
Client-side field encryption for Haven.

Every sensitive field is encrypted on this device before it is handed to
the record store, and decrypted after it is read back. The store only ever
sees ciphertext columns (encrypted_notes, encrypted_content, ...).

Key Features:
- AES-256-GCM with a fresh 96-bit nonce per call (authenticated, so a
  wrong key or tampered ciphertext is detected, never silently garbled)
- Session-derived keys for authenticated principals:
  SHA-256(access_token || salt)
- Random device keys for anonymous principals, persisted (hex) in device
  storage so they survive restarts
- JSON helpers for list/dict valued fields (triggers, contacts)

Ciphertext format:
    base64(nonce[12] || ciphertext || tag[16])

Usage:
    from haven.lib.encryption import FieldCipher, KeyDerivation

    keys = KeyDerivation(storage)
    keys.derive_from_session(session.access_token)
    cipher = FieldCipher(keys)
    token = cipher.encrypt("my notes")
    cipher.decrypt(token)  # "my notes"
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import hashlib
import json
import logging
import secrets
from datetime import date, datetime
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from haven.config.settings import DEFAULT_SESSION_KEY_SALT
from haven.lib.device_storage import ANONYMOUS_ID_KEY, DEVICE_KEY_KEY, DeviceStorage
from haven.lib.exceptions import DecryptionFailed, KeyNotInitialized, SerializationError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


@dataclasses.dataclass(frozen=True)
class EncryptionKey:
    """
    32 bytes of AES key material.

    repr() never shows the key bytes.
    """

    material: bytes = dataclasses.field(repr=False)

    def __post_init__(self) -> None:
        if len(self.material) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(self.material)}")

    def hex(self) -> str:
        return self.material.hex()

    @classmethod
    def from_hex(cls, value: str) -> EncryptionKey:
        try:
            return cls(bytes.fromhex(value))
        except ValueError as e:
            raise KeyNotInitialized("Stored device key is malformed") from e


class HavenJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for encrypted structured fields:
    - dataclasses -> dict via dataclasses.asdict()
    - datetime/date -> .isoformat()
    - Enum -> .value
    - set -> sorted list
    """

    def default(self, obj: Any) -> Any:
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, set):
            return sorted(obj, key=str)
        return super().default(obj)


def generate_anonymous_id() -> str:
    """Return a 16-char hex id: SHA-256 of 16 random bytes, truncated."""
    return hashlib.sha256(secrets.token_bytes(16)).hexdigest()[:16]


def get_or_create_anonymous_id(storage: DeviceStorage) -> str:
    """Return the persisted anonymous id, creating and persisting one if absent."""
    existing = storage.get(ANONYMOUS_ID_KEY)
    if existing:
        return existing
    anonymous_id = generate_anonymous_id()
    storage.set(ANONYMOUS_ID_KEY, anonymous_id)
    return anonymous_id


class KeyDerivation:
    """
    Produces and holds the current principal's encryption key.

    One instance belongs to one PrincipalContext. derive_from_session() and
    device_key() install the key they return; clear() drops it from memory
    only (the device key stays in device storage).
    """

    def __init__(
        self,
        storage: DeviceStorage,
        salt: str = DEFAULT_SESSION_KEY_SALT,
    ) -> None:
        self._storage = storage
        self._salt = salt
        self._current: EncryptionKey | None = None

    @property
    def has_key(self) -> bool:
        return self._current is not None

    @property
    def current_key(self) -> EncryptionKey:
        if self._current is None:
            raise KeyNotInitialized("No encryption key established for this session")
        return self._current

    def derive_from_session(self, access_token: str) -> EncryptionKey:
        """Deterministic: the same token and salt always give the same key."""
        if not access_token:
            raise KeyNotInitialized("Cannot derive a key from an empty access token")
        digest = hashlib.sha256((access_token + self._salt).encode("utf-8")).digest()
        self._current = EncryptionKey(digest)
        return self._current

    def device_key(self) -> EncryptionKey:
        """Load the persisted device key, or generate and persist a new one."""
        stored = self._storage.get(DEVICE_KEY_KEY)
        if stored:
            key = EncryptionKey.from_hex(stored)
        else:
            key = EncryptionKey(secrets.token_bytes(KEY_SIZE))
            self._storage.set(DEVICE_KEY_KEY, key.hex())
            logger.info("device_key_generated")
        self._current = key
        return key

    def clear(self) -> None:
        self._current = None


class FieldCipher:
    """
    Encrypts and decrypts individual field values with the current key.

    decrypt() raises DecryptionFailed on a wrong key, tampered ciphertext or
    malformed input. decrypt_json() additionally raises SerializationError
    when the plaintext is not JSON, so callers can tell the two apart.
    """

    def __init__(self, keys: KeyDerivation) -> None:
        self._keys = keys

    @property
    def keys(self) -> KeyDerivation:
        return self._keys

    def encrypt(self, plaintext: str) -> str:
        return self.encrypt_with(self._keys.current_key, plaintext)

    def decrypt(self, token: str) -> str:
        return self.decrypt_with(self._keys.current_key, token)

    def encrypt_json(self, value: Any) -> str:
        return self.encrypt(json.dumps(value, cls=HavenJSONEncoder))

    def decrypt_json(self, token: str) -> Any:
        plaintext = self.decrypt(token)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise SerializationError("Decrypted value is not valid JSON") from e

    @staticmethod
    def encrypt_with(key: EncryptionKey, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(key.material).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    @staticmethod
    def decrypt_with(key: EncryptionKey, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("Ciphertext is not valid base64") from e
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailed("Ciphertext is too short")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = AESGCM(key.material).decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionFailed("Ciphertext does not match the current key") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("Decrypted bytes are not UTF-8 text") from e


__all__ = [
    "EncryptionKey",
    "FieldCipher",
    "HavenJSONEncoder",
    "KeyDerivation",
    "generate_anonymous_id",
    "get_or_create_anonymous_id",
    "KEY_SIZE",
    "NONCE_SIZE",
]
