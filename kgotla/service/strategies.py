"""Credential-verification strategies composed by the auth orchestrator.

The set is closed: a password strategy and a Google OAuth strategy. Each
exposes ``authenticate(input) -> Account`` and nothing is registered in
global state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, TypeVar

from kgotla.logging import email_fingerprint, get_logger
from kgotla.service.errors import InternalError, InvalidCredentialsError, ValidationError
from kgotla.service.passwords import PasswordService
from kgotla.service.schemas import OAuthProfile
from kgotla.storage.errors import ConstraintViolation
from kgotla.storage.models import Account, FailureReason, OAuthIdentity

logger = get_logger(__name__)

CredentialInput = TypeVar("CredentialInput", contravariant=True)

OAUTH_ONLY_MESSAGE = "Please use Google login for this account"


class CredentialStrategy(Protocol[CredentialInput]):
    name: str

    async def authenticate(self, credentials: CredentialInput) -> Account: ...


@dataclass(frozen=True)
class PasswordCredentials:
    email: str
    password: str


class PasswordStrategy:
    """Email + password check against the stored argon2 hash.

    Unknown emails, OAuth-only accounts and wrong passwords all raise the same
    ``InvalidCredentialsError`` after one full hash verification.
    """

    name = "password"

    def __init__(self, store, passwords: PasswordService) -> None:
        self.store = store
        self.passwords = passwords

    async def authenticate(self, credentials: PasswordCredentials) -> Account:
        account = self.store.get_account_by_email(credentials.email)
        stored_hash = account.password_hash if account else None
        matched = await self.passwords.verify_async(credentials.password, stored_hash)
        if not account:
            raise InvalidCredentialsError(failure_reason=FailureReason.USER_NOT_FOUND)
        if not account.has_password:
            raise InvalidCredentialsError(failure_reason=FailureReason.OAUTH_ONLY)
        if not matched:
            raise InvalidCredentialsError(failure_reason=FailureReason.INVALID_PASSWORD)
        if self.passwords.needs_rehash(stored_hash):
            upgraded = await self.passwords.hash_async(credentials.password)
            self.store.update_password(account.id, upgraded)
            account.password_hash = upgraded
            logger.info("password_hash_upgraded", account_id=account.id)
        return account


class GoogleOAuthStrategy:
    """Resolve a provider-verified Google profile to an account.

    Lookup order: existing link, then an account with the same email (linked
    and marked verified), then a new OAuth-only account.
    """

    name = "google"
    provider = "google"

    def __init__(self, store) -> None:
        self.store = store

    def _identity(self, profile: OAuthProfile) -> OAuthIdentity:
        return OAuthIdentity(
            provider=self.provider,
            provider_user_id=profile.provider_user_id,
            access_token=profile.access_token,
            refresh_token=profile.refresh_token,
            token_expires_at=profile.token_expires_at,
            scope=profile.scope,
        )

    async def authenticate(self, profile: OAuthProfile) -> Account:
        if profile.provider != self.provider:
            raise ValidationError(
                f"unsupported oauth provider: {profile.provider}",
                detail={"field": "provider"},
            )

        account = self._from_existing_link(profile)
        if account:
            return account

        if not profile.email:
            raise ValidationError(
                "OAuth profile did not include an email address",
                detail={"field": "email"},
            )

        existing = self.store.get_account_by_email(profile.email)
        if existing:
            return self._link_existing(existing, profile)

        try:
            account = self.store.create_account(
                profile.email,
                None,
                first_name=profile.first_name,
                last_name=profile.last_name,
                profile_image_url=profile.avatar_url,
                email_verified=True,
                oauth=self._identity(profile),
            )
        except ConstraintViolation as exc:
            # A concurrent callback for the same person won the insert
            if exc.field == "email":
                raced = self.store.get_account_by_email(profile.email)
                if raced:
                    return self._link_existing(raced, profile)
            if exc.field == "provider_user_id":
                account = self._from_existing_link(profile)
                if account:
                    return account
            raise
        logger.info("oauth_account_created", account_id=account.id, provider=self.provider)
        return account

    def _from_existing_link(self, profile: OAuthProfile) -> Optional[Account]:
        link = self.store.get_oauth_link(self.provider, profile.provider_user_id)
        if not link:
            return None
        self.store.update_oauth_link_tokens(
            link.id,
            access_token=profile.access_token,
            refresh_token=profile.refresh_token,
            token_expires_at=profile.token_expires_at,
            scope=profile.scope,
        )
        account = self.store.get_account(link.account_id)
        if not account:
            logger.error("oauth_link_orphaned", link_id=link.id, account_id=link.account_id)
            raise InternalError()
        return account

    def _link_existing(self, account: Account, profile: OAuthProfile) -> Account:
        try:
            self.store.create_oauth_link(account.id, self._identity(profile))
        except ConstraintViolation as exc:
            if exc.field != "provider_user_id":
                raise
            linked = self._from_existing_link(profile)
            if linked:
                return linked
            raise
        # The provider asserted ownership of this address
        if not account.email_verified:
            account = self.store.mark_email_verified(account.id) or account
        logger.info(
            "oauth_identity_linked_by_email",
            account_id=account.id,
            provider=self.provider,
            email_hash=email_fingerprint(account.email),
        )
        return account
