"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from kgotla.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness and lookups (case-insensitive)."""
    return (email or "").strip().lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes coming back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# SECRET DIGESTS
# ============================================================================

def hash_secret(secret: str) -> str:
    """SHA-256 hex digest stored in place of refresh tokens and artifact secrets.

    The raw values carry 256 bits of entropy (or are short-lived and attempt
    capped, for codes), so an unsalted fast digest is sufficient for lookup.
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


# ============================================================================
# PROVIDER TOKEN ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class TokenCipher:
    """Fernet wrapper for OAuth provider tokens stored at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("token encryption key material is required")
        try:
            self._fernet = Fernet(derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize token cipher") from exc

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
            # Rotated key; provider tokens are not used for security decisions
            logger.warning("provider_token_decrypt_failed")
            return None
