from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kgotla.storage.models import Account

# RFC 5321 path limit
MAX_EMAIL_LENGTH = 254


class AccountView(BaseModel):
    """Account fields safe to return to clients (no hash, no provider tokens)."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    subscription_tier: str = "free"
    has_password: bool = True
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountView":
        return cls(
            id=account.id,
            email=account.email,
            email_verified=account.email_verified,
            first_name=account.first_name,
            last_name=account.last_name,
            profile_image_url=account.profile_image_url,
            subscription_tier=account.subscription_tier,
            has_password=account.has_password,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: Literal["bearer"] = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResult(BaseModel):
    account: AccountView
    tokens: TokenPair

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str:
        return self.tokens.refresh_token


class _BaseClaims(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    account_id: str = Field(alias="sub")
    email: str
    token_type: str
    issued_at: datetime = Field(alias="iat")
    expires_at: datetime = Field(alias="exp")
    issuer: str = Field(alias="iss")
    audience: str = Field(alias="aud")
    jti: str


class AccessClaims(_BaseClaims):
    token_type: Literal["access"]
    is_verified: bool = False
    subscription_tier: str = "free"


class RefreshClaims(_BaseClaims):
    token_type: Literal["refresh"]


class OAuthProfile(BaseModel):
    """Profile asserted by an identity provider after a completed OAuth handshake."""

    provider: str = "google"
    provider_user_id: str = Field(min_length=1)
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if not value:
            return None
        if len(value) > MAX_EMAIL_LENGTH or "@" not in value:
            raise ValueError("provider email is not a valid address")
        return value


class PasswordStrength(BaseModel):
    valid: bool
    violations: List[str] = Field(default_factory=list)
