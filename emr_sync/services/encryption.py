"""
Application-layer encryption for patient names synced from the EMR.

Fernet (AES-CBC + HMAC) with the key taken from PHI_ENCRYPTION_KEY. Ciphertext
differs on every call, so upserts compare decrypted values, never ciphertext.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from emr_sync.config import settings

logger = logging.getLogger(__name__)


class EncryptionService:
    """Wraps Fernet symmetric encryption for PHI fields."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: an ephemeral key makes stored names unreadable
            # after a restart. Production must set PHI_ENCRYPTION_KEY.
            logger.warning("PHI_ENCRYPTION_KEY not set – using an ephemeral key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str | None) -> str | None:
        if plaintext is None:
            return None
        if plaintext == "":
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str | None) -> str | None:
        if ciphertext is None:
            return None
        if ciphertext == "":
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def matches(self, ciphertext: str | None, plaintext: str | None) -> bool:
        """True when ``ciphertext`` decrypts to ``plaintext``; unreadable tokens never match."""
        try:
            return self.decrypt(ciphertext) == plaintext
        except InvalidToken:
            return False


encryption = EncryptionService()
