"""Security module - encryption, credential cache, merchant credentials."""

from core.security.credential_cache import TTLCache
from core.security.credential_store import (
    CredentialStore,
    NotConnectedError,
    RefreshFailedError,
)
from core.security.encryption import (
    EncryptedSecret,
    TokenEncryption,
    generate_encryption_key,
)

__all__ = [
    "TTLCache",
    "CredentialStore",
    "NotConnectedError",
    "RefreshFailedError",
    "EncryptedSecret",
    "TokenEncryption",
    "generate_encryption_key",
]
