from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantauth.logging import get_logger

logger = get_logger(__name__)

NONCE_SIZE = 12


class SecretDecryptionError(Exception):
    """Ciphertext was tampered with, truncated, or sealed under another key."""


class SecretCipher:
    """AES-256-GCM sealing for MFA secrets and backup codes.

    Each call draws a fresh 96-bit nonce, so encrypting the same plaintext twice
    never yields the same ciphertext. Output is urlsafe base64 of nonce||ciphertext.
    """

    def __init__(self, hex_key: str) -> None:
        try:
            key = bytes.fromhex(hex_key)
        except (TypeError, ValueError) as exc:
            raise ValueError("encryption key must be hexadecimal") from exc
        if len(key) != 32:
            raise ValueError("encryption key must be 32 bytes (64 hex characters)")
        self._aead = AESGCM(key)
        # Separate key for code fingerprints so hashes never reveal the cipher key
        self._hash_key = hmac.new(key, b"backup-code-hash", hashlib.sha256).digest()

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, ValueError, AttributeError) as exc:
            raise SecretDecryptionError("ciphertext is not valid base64") from exc
        if len(raw) <= NONCE_SIZE:
            raise SecretDecryptionError("ciphertext too short")
        try:
            plaintext = self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag as exc:
            logger.warning("secret_decrypt_failed")
            raise SecretDecryptionError("ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")

    def hash_code(self, code: str) -> str:
        """Keyed fingerprint used to claim a backup code without decrypting the set."""
        return hmac.new(self._hash_key, code.encode("utf-8"), hashlib.sha256).hexdigest()
