from __future__ import annotations

import hashlib
import json
import logging
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

LOGGER = logging.getLogger("tubebridge.crypto")

KEY_BYTES = 32
SALT_BYTES = 16
NONCE_BYTES = 12
TAG_BYTES = 16


class CryptoError(Exception):
    pass


class CryptoContext:
    """Holds the process key and seals/opens config secrets with AES-256-GCM.

    Sealed strings look like ``salt:nonce:tag:ciphertext`` (all hex). A fresh
    salt per message feeds ``sha256(process_key || salt)`` to derive the
    message key, so identical plaintexts never produce identical tokens.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError(f"process key must be {KEY_BYTES} bytes, got {len(key)}")
        self._key = key

    @classmethod
    def from_optional_key(cls, key: bytes | None) -> CryptoContext:
        if key is not None:
            return cls(key)
        LOGGER.warning(
            "no encryption key configured; using a random process key. "
            "Set TUBEBRIDGE_ENCRYPTION_KEY so config tokens survive restarts."
        )
        return cls(secrets.token_bytes(KEY_BYTES))

    def encrypt(self, plaintext: str) -> str:
        salt = secrets.token_bytes(SALT_BYTES)
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(part.hex() for part in (salt, nonce, tag, ciphertext))

    def decrypt(self, token: str) -> str:
        parts = token.split(":")
        if len(parts) != 4:
            raise CryptoError("invalid encrypted data format")
        try:
            salt, nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise CryptoError("encrypted data is not hex encoded") from exc
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CryptoError("invalid nonce or tag length")
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CryptoError("encrypted data failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoError("decrypted data is not utf-8") from exc

    def encrypt_json(self, payload: Any) -> str:
        return self.encrypt(json.dumps(payload, separators=(",", ":")))

    def decrypt_json(self, token: str) -> Any:
        raw = self.decrypt(token)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CryptoError("decrypted data is not json") from exc

    def _derive_key(self, salt: bytes) -> bytes:
        return hashlib.sha256(self._key + salt).digest()
