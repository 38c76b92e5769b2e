from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper used to keep TOTP seeds encrypted at rest."""

    def __init__(self, key_material: str):
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            self._fernet = Fernet(self.derive_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, ciphertext: str) -> Optional[str]:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            # Key rotated or row tampered with; treat as "no usable secret"
            logger.warning("mfa_secret_decrypt_failed")
            return None


def normalize_device_info(value: Any) -> Dict[str, Any]:
    """Return device info as a dict whether it was stored structured or serialized."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def normalize_email(email: str) -> str:
    return email.strip().lower()
