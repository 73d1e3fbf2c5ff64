"""Secret encryption using AES-GCM.

Merchant OAuth secrets (client id/secret, access and refresh tokens) are
encrypted field by field with AES-256-GCM. Each envelope is bound to the
merchant id and field name as associated data, so a ciphertext copied onto
another merchant or another column fails to decrypt.
"""

import base64
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for AES-256
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


@dataclass
class EncryptedSecret:
    """Encrypted secret with the metadata needed to decrypt it."""
    ciphertext: str   # Base64, GCM tag appended
    nonce: str        # Base64 96-bit nonce
    merchant_id: str
    field: str
    created_at: str
    key_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "merchant_id": self.merchant_id,
            "field": self.field,
            "created_at": self.created_at,
            "key_version": self.key_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedSecret":
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            merchant_id=data["merchant_id"],
            field=data["field"],
            created_at=data.get("created_at", ""),
            key_version=data.get("key_version", 1),
        )


class TokenEncryption:
    """AES-256-GCM encryption for merchant secrets.

    Usage:
        enc = TokenEncryption(os.environ["TOKEN_ENCRYPTION_KEY"])
        envelope = enc.encrypt_secret("eyJ...", merchant_id="m-1", field="access_token")
        token = enc.decrypt_secret(envelope)
    """

    def __init__(self, encryption_key: str, key_version: int = 1):
        """Initialize with a base64-encoded 32-byte key."""
        try:
            key = base64.b64decode(encryption_key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}")
        if len(key) != 32:
            raise ValueError("Invalid encryption key: must be 32 bytes (256 bits)")

        self._aesgcm = AESGCM(key)
        self._key_version = key_version

    @staticmethod
    def _aad(merchant_id: str, field: str) -> bytes:
        return f"{merchant_id}:{field}".encode("utf-8")

    def encrypt_secret(self, value: str, merchant_id: str, field: str) -> EncryptedSecret:
        """Encrypt one secret value for a merchant field."""
        nonce = os.urandom(12)
        ciphertext = self._aesgcm.encrypt(nonce, value.encode("utf-8"), self._aad(merchant_id, field))

        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode("utf-8"),
            nonce=base64.b64encode(nonce).decode("utf-8"),
            merchant_id=merchant_id,
            field=field,
            created_at=datetime.now(timezone.utc).isoformat(),
            key_version=self._key_version,
        )

    def decrypt_secret(self, encrypted: EncryptedSecret) -> str:
        """Decrypt a secret.

        Raises:
            ValueError: wrong key, tampered data, or envelope moved to another merchant/field
        """
        try:
            plaintext = self._aesgcm.decrypt(
                base64.b64decode(encrypted.nonce),
                base64.b64decode(encrypted.ciphertext),
                self._aad(encrypted.merchant_id, encrypted.field),
            )
        except (InvalidTag, ValueError) as e:
            raise ValueError(f"Secret decryption failed for {encrypted.field}: {e!r}")
        return plaintext.decode("utf-8")

    def seal(self, value: str, merchant_id: str, field: str) -> Dict[str, Any]:
        """Encrypt and return the storable dict form."""
        return self.encrypt_secret(value, merchant_id, field).to_dict()

    def unseal(self, envelope: Dict[str, Any], merchant_id: str, field: str) -> str:
        """Decrypt a stored dict envelope, checking it belongs to merchant/field."""
        encrypted = EncryptedSecret.from_dict(envelope)
        if encrypted.merchant_id != merchant_id or encrypted.field != field:
            raise ValueError(f"Secret envelope does not belong to {merchant_id}:{field}")
        return self.decrypt_secret(encrypted)
