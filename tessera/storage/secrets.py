from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from tessera.logging import get_logger

logger = get_logger(__name__)


class FieldCipher:
    """Fernet encryption for credential columns (TOTP secrets, provider tokens)."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("field encryption key material is required")
        try:
            self._fernet = Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize field cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            # Unreadable ciphertext is treated as absent, never as plaintext
            logger.warning("field_decrypt_failed")
            return None
