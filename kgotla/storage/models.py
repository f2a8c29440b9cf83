from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ArtifactPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class ArtifactKind(str, Enum):
    CODE = "code"
    LINK = "link"


class FailureReason(str, Enum):
    """Why a login attempt was rejected; stored on the audit record."""

    INVALID_PASSWORD = "invalid_password"
    USER_NOT_FOUND = "user_not_found"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    RATE_LIMITED = "rate_limited"
    OAUTH_ONLY = "oauth_only"


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    subscription_tier: str = "free"
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class OAuthLink:
    id: str
    account_id: str
    provider: str
    provider_user_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    linked_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class OAuthIdentity:
    """Provider identity handed to ``create_account`` for OAuth-only signups."""

    provider: str
    provider_user_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    id: str
    account_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    origin_ip: Optional[str] = None
    device_info: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class VerificationArtifact:
    """Single-use secret proving control of an email address.

    ``purpose`` separates email verification from password reset; ``kind``
    separates numeric codes from long link tokens. Only the SHA-256 digest of
    the secret is kept.
    """

    id: str
    email: str
    purpose: ArtifactPurpose
    kind: ArtifactKind
    secret_hash: str
    expires_at: datetime
    consumed: bool = False
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    consumed_at: Optional[datetime] = None

    def is_active(self, now: datetime, max_attempts: Optional[int] = None) -> bool:
        if self.consumed or now >= self.expires_at:
            return False
        if max_attempts is not None and self.attempts >= max_attempts:
            return False
        return True


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool
    origin_ip: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
