"""
Credential encryption for secrets stored at rest.

AES-256-GCM with a random 96-bit nonce. Stored values are
base64(nonce || ciphertext || tag), the tag being the 16 bytes AESGCM
appends to the ciphertext.
"""
import base64
import binascii
import json
import logging
import os
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
KEY_LENGTH = 32


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted or decrypted."""
    pass


class CredentialCipher:
    """Encrypts and decrypts merchant credentials with a single master key."""

    def __init__(self, key_b64: str):
        """
        Args:
            key_b64: base64 encoded 32 byte key (CREDENTIALS_ENCRYPTION_KEY)
        """
        if not key_b64:
            raise EncryptionError("CREDENTIALS_ENCRYPTION_KEY is not set")
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Encryption key is not valid base64: {e}") from e
        if len(key) != KEY_LENGTH:
            raise EncryptionError(
                f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    @staticmethod
    def generate_key() -> str:
        """Generate a fresh base64 encoded key."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()

    def encrypt(self, plain_text: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plain_text.encode(), None)
        return base64.b64encode(nonce + sealed).decode()

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError("Encrypted value is not valid base64") from e

        if len(raw) <= NONCE_LENGTH:
            raise EncryptionError("Encrypted value is too short")

        nonce, sealed = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        try:
            return self._aesgcm.decrypt(nonce, sealed, None).decode()
        except InvalidTag as e:
            logger.error("Decryption failed: authentication tag mismatch")
            raise EncryptionError("Failed to decrypt value") from e

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data))

    def decrypt_json(self, token: str) -> Dict[str, Any]:
        return json.loads(self.decrypt(token))


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask a secret for display, keeping only the last `visible` characters."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
