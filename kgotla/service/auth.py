from __future__ import annotations

import asyncio
import contextlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Set

from kgotla.config import Settings
from kgotla.durations import parse_duration
from kgotla.logging import email_fingerprint, get_logger
from kgotla.service.email import EmailSender
from kgotla.service.errors import (
    AccountNotFoundError,
    AuthenticationError,
    DuplicateEmailError,
    EmailDeliveryError,
    EmailNotVerifiedError,
    InternalError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    InvalidOrExpiredTokenError,
    ServiceError,
    ValidationError,
)
from kgotla.service.ledger import SessionLedger
from kgotla.service.login_guard import LoginAttemptGuard
from kgotla.service.passwords import PasswordService
from kgotla.service.schemas import (
    MAX_EMAIL_LENGTH,
    AccountView,
    AuthResult,
    OAuthProfile,
    TokenPair,
)
from kgotla.service.strategies import (
    OAUTH_ONLY_MESSAGE,
    GoogleOAuthStrategy,
    PasswordCredentials,
    PasswordStrategy,
)
from kgotla.service.tokens import TokenService
from kgotla.storage.common import hash_secret, normalize_email
from kgotla.storage.errors import ConstraintViolation
from kgotla.storage.models import (
    Account,
    ArtifactKind,
    ArtifactPurpose,
    FailureReason,
    VerificationArtifact,
)

logger = get_logger(__name__)


class SessionRegistry(Protocol):
    """Optional collaborator tracking sessions outside the refresh-token ledger."""

    def deactivate_all(self, account_id: str) -> int: ...


@dataclass
class AuthContext:
    account_id: str
    email: str
    is_verified: bool
    subscription_tier: str


class AuthService:
    """Registration, login, token renewal, verification and password flows.

    Store calls are synchronous and short; password hashing and email
    delivery run in worker threads so concurrent requests are not serialized
    behind them.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        email: EmailSender,
        *,
        passwords: Optional[PasswordService] = None,
        tokens: Optional[TokenService] = None,
        session_registry: Optional[SessionRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.passwords = passwords or PasswordService.from_settings(settings)
        self.tokens = tokens or TokenService(settings, clock=self._clock)
        self.ledger = SessionLedger(store, clock=self._clock)
        self.login_guard = LoginAttemptGuard(
            store,
            window=settings.login_rate_limit_delta,
            threshold=settings.login_rate_limit_threshold,
            retention=settings.login_attempt_retention_delta,
            clock=self._clock,
        )
        self.password_strategy = PasswordStrategy(store, self.passwords)
        self.oauth_strategy = GoogleOAuthStrategy(store)
        self.session_registry = session_registry
        self._background_tasks: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    @contextlib.contextmanager
    def _internal_errors(self, flow: str):
        """Let service errors through; anything else becomes an opaque InternalError."""
        try:
            yield
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError() from exc
            logger.exception("auth_constraint_violation", flow=flow, detail=exc.detail)
            raise InternalError() from exc
        except Exception as exc:
            logger.exception("auth_flow_failed", flow=flow, error_type=type(exc).__name__)
            raise InternalError() from exc

    def _normalize_email(self, email: str) -> str:
        if not isinstance(email, str):
            raise ValidationError("Email is required", detail={"field": "email"})
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized or len(normalized) > MAX_EMAIL_LENGTH:
            raise ValidationError("Invalid email address", detail={"field": "email"})
        return normalized

    def _issue_session(
        self,
        account: Account,
        *,
        remember_me: bool = False,
        origin_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        access = self.tokens.issue_access(account)
        refresh = self.tokens.issue_refresh(account, remember_me=remember_me)
        self.ledger.issue(
            account.id,
            refresh.value,
            refresh.expires_at,
            origin_ip=origin_ip,
            device_info=user_agent,
        )
        return AuthResult(
            account=AccountView.from_account(account),
            tokens=TokenPair(
                access_token=access.value,
                refresh_token=refresh.value,
                access_expires_at=access.expires_at,
                refresh_expires_at=refresh.expires_at,
            ),
        )

    def _end_all_sessions(self, account_id: str) -> int:
        revoked = self.ledger.revoke_all(account_id)
        if self.session_registry is not None:
            deactivated = self.session_registry.deactivate_all(account_id)
            logger.info("parallel_sessions_deactivated", account_id=account_id, count=deactivated)
        return revoked

    # registration
    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        origin_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        verification_kind: ArtifactKind = ArtifactKind.CODE,
    ) -> AuthResult:
        with self._internal_errors("register"):
            normalized = self._normalize_email(email)
            if self.store.get_account_by_email(normalized):
                raise DuplicateEmailError()
            self.passwords.ensure_strong(password)
            password_hash = await self.passwords.hash_async(password)
            # The unique index decides concurrent registrations for one email
            account = self.store.create_account(
                normalized,
                password_hash,
                first_name=first_name,
                last_name=last_name,
            )
            logger.info(
                "account_registered",
                account_id=account.id,
                email_hash=email_fingerprint(normalized),
            )

            delivered = await self._issue_verification(account.email, verification_kind)
            if not delivered:
                logger.error("registration_verification_email_failed", account_id=account.id)
                raise EmailDeliveryError()

            self._schedule_welcome(account)
            return self._issue_session(account, origin_ip=origin_ip, user_agent=user_agent)

    def _schedule_welcome(self, account: Account) -> None:
        task = asyncio.create_task(self._send_welcome(account.email, account.first_name, account.id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _send_welcome(
        self, to_email: str, first_name: Optional[str], account_id: str
    ) -> None:
        try:
            sent = await asyncio.to_thread(self.email.send_welcome, to_email, first_name)
        except Exception as exc:
            logger.warning("welcome_email_failed", account_id=account_id, error=str(exc))
            return
        if not sent:
            logger.warning("welcome_email_failed", account_id=account_id)

    # login
    async def login(
        self,
        email: str,
        password: str,
        origin_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        remember_me: bool = False,
    ) -> AuthResult:
        with self._internal_errors("login"):
            normalized = self._normalize_email(email)
            # Locked out before any account lookup or hash work
            self.login_guard.check(normalized, origin_ip, user_agent=user_agent)
            try:
                account = await self.password_strategy.authenticate(
                    PasswordCredentials(normalized, password)
                )
            except InvalidCredentialsError as exc:
                self.login_guard.record(
                    normalized,
                    origin_ip,
                    False,
                    exc.failure_reason or FailureReason.INVALID_PASSWORD,
                    user_agent=user_agent,
                )
                logger.info(
                    "login_failed",
                    email_hash=email_fingerprint(normalized),
                    origin_ip=origin_ip,
                    reason=exc.failure_reason,
                )
                raise InvalidCredentialsError() from None

            if not account.email_verified:
                self.login_guard.record(
                    normalized,
                    origin_ip,
                    False,
                    FailureReason.EMAIL_NOT_VERIFIED,
                    user_agent=user_agent,
                )
                logger.info("login_email_not_verified", account_id=account.id)
                raise EmailNotVerifiedError()

            self.login_guard.record(normalized, origin_ip, True, user_agent=user_agent)
            now = self._now()
            self.store.record_login(account.id, now)
            account.last_login_at = now
            logger.info("login_succeeded", account_id=account.id, remember_me=remember_me)
            return self._issue_session(
                account,
                remember_me=remember_me,
                origin_ip=origin_ip,
                user_agent=user_agent,
            )

    # token renewal
    async def refresh(
        self,
        refresh_token: str,
        *,
        origin_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        with self._internal_errors("refresh"):
            claims = self.tokens.verify_refresh(refresh_token)
            account = self.store.get_account(claims.account_id)
            if not account:
                raise InvalidOrExpiredTokenError()
            # Keep the lifetime class (normal or remember-me) across rotations
            lifetime = claims.expires_at - claims.issued_at
            remember_me = lifetime > parse_duration(self.settings.refresh_token_ttl)
            new_refresh = self.tokens.issue_refresh(account, remember_me=remember_me)
            record = self.ledger.rotate(
                refresh_token,
                new_refresh.value,
                new_refresh.expires_at,
                origin_ip=origin_ip,
                device_info=user_agent,
            )
            if record is None:
                logger.warning("refresh_token_not_active", account_id=account.id)
                raise InvalidOrExpiredTokenError()
            access = self.tokens.issue_access(account)
            return TokenPair(
                access_token=access.value,
                refresh_token=new_refresh.value,
                access_expires_at=access.expires_at,
                refresh_expires_at=new_refresh.expires_at,
            )

    async def logout(self, refresh_token: str) -> None:
        with self._internal_errors("logout"):
            if not refresh_token:
                return
            if not self.ledger.revoke(refresh_token):
                logger.debug("logout_token_not_active")

    async def logout_all(self, account_id: str) -> int:
        with self._internal_errors("logout_all"):
            revoked = self._end_all_sessions(account_id)
            logger.info("logout_all", account_id=account_id, revoked=revoked)
            return revoked

    # email verification
    async def _issue_verification(self, email: str, kind: ArtifactKind) -> bool:
        if kind == ArtifactKind.CODE:
            secret = self.tokens.new_verification_code()
            ttl = self.settings.verification_code_ttl
        else:
            secret = self.tokens.new_opaque_secret()
            ttl = self.settings.verification_link_ttl
        self.store.create_artifact(
            email,
            ArtifactPurpose.EMAIL_VERIFICATION,
            kind,
            hash_secret(secret),
            self.tokens.expiry_from_duration(ttl),
            now=self._now(),
        )
        logger.info(
            "email_verification_issued",
            email_hash=email_fingerprint(email),
            token_kind=kind.value,
        )
        return await asyncio.to_thread(self.email.send_email_verification, email, secret, kind)

    async def send_email_verification(
        self, email: str, kind: ArtifactKind = ArtifactKind.CODE
    ) -> None:
        """Issue a fresh verification artifact; unknown or verified emails get nothing."""
        with self._internal_errors("send_email_verification"):
            normalized = self._normalize_email(email)
            account = self.store.get_account_by_email(normalized)
            if not account or account.email_verified:
                logger.info(
                    "email_verification_skipped",
                    email_hash=email_fingerprint(normalized),
                )
                return
            if not await self._issue_verification(account.email, kind):
                logger.warning("email_verification_send_failed", account_id=account.id)

    async def verify_email(self, email: str, secret: str) -> AccountView:
        with self._internal_errors("verify_email"):
            normalized = self._normalize_email(email)
            now = self._now()
            artifact = self.store.find_active_artifact(
                normalized,
                ArtifactPurpose.EMAIL_VERIFICATION,
                now,
                max_attempts=self.settings.verification_max_attempts,
            )
            if not artifact:
                raise InvalidOrExpiredCodeError()
            if not hmac.compare_digest(artifact.secret_hash, hash_secret(secret or "")):
                attempts = self.store.increment_artifact_attempts(artifact.id)
                logger.info(
                    "email_verification_mismatch",
                    email_hash=email_fingerprint(normalized),
                    attempts=attempts,
                )
                raise InvalidOrExpiredCodeError()
            return self._complete_verification(artifact, now, InvalidOrExpiredCodeError)

    async def verify_email_link(self, secret: str) -> AccountView:
        with self._internal_errors("verify_email_link"):
            now = self._now()
            artifact = self.store.find_active_artifact_by_secret(
                ArtifactPurpose.EMAIL_VERIFICATION,
                hash_secret(secret or ""),
                now,
                max_attempts=self.settings.verification_max_attempts,
            )
            if not artifact:
                raise InvalidOrExpiredTokenError()
            return self._complete_verification(artifact, now, InvalidOrExpiredTokenError)

    def _complete_verification(
        self,
        artifact: VerificationArtifact,
        now: datetime,
        error: type[InvalidOrExpiredTokenError],
    ) -> AccountView:
        account = self.store.get_account_by_email(artifact.email)
        if not account:
            raise error()
        if not self.store.consume_artifact(artifact.id, now):
            raise error()
        verified = self.store.mark_email_verified(account.id)
        if not verified:
            raise error()
        logger.info("email_verified", account_id=account.id)
        return AccountView.from_account(verified)

    # passwords
    def reset_url(self, secret: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/reset-password?token={secret}"

    async def request_password_reset(self, email: str) -> None:
        with self._internal_errors("request_password_reset"):
            normalized = self._normalize_email(email)
            account = self.store.get_account_by_email(normalized)
            if not account:
                logger.info(
                    "password_reset_unknown_email",
                    email_hash=email_fingerprint(normalized),
                )
                return
            secret = self.tokens.new_opaque_secret()
            self.store.create_artifact(
                account.email,
                ArtifactPurpose.PASSWORD_RESET,
                ArtifactKind.LINK,
                hash_secret(secret),
                self.tokens.expiry_from_duration(self.settings.password_reset_ttl),
                now=self._now(),
            )
            logger.info("password_reset_requested", account_id=account.id)
            sent = await asyncio.to_thread(
                self.email.send_password_reset, account.email, self.reset_url(secret)
            )
            if not sent:
                logger.warning("password_reset_email_failed", account_id=account.id)

    async def reset_password(self, secret: str, new_password: str) -> None:
        with self._internal_errors("reset_password"):
            self.passwords.ensure_strong(new_password)
            now = self._now()
            artifact = self.store.find_active_artifact_by_secret(
                ArtifactPurpose.PASSWORD_RESET, hash_secret(secret or ""), now
            )
            if not artifact:
                logger.warning("password_reset_invalid_token")
                raise InvalidOrExpiredTokenError()
            account = self.store.get_account_by_email(artifact.email)
            if not account:
                raise InvalidOrExpiredTokenError()
            new_hash = await self.passwords.hash_async(new_password)
            # Consume before writing so one token resets the password at most once
            if not self.store.consume_artifact(artifact.id, now):
                raise InvalidOrExpiredTokenError()
            self.store.update_password(account.id, new_hash)
            revoked = self._end_all_sessions(account.id)
            logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        with self._internal_errors("change_password"):
            account = self.store.get_account(account_id)
            if not account:
                raise AccountNotFoundError()
            if not account.has_password:
                raise InvalidCredentialsError(
                    OAUTH_ONLY_MESSAGE, failure_reason=FailureReason.OAUTH_ONLY
                )
            if not await self.passwords.verify_async(current_password, account.password_hash):
                logger.info("change_password_rejected", account_id=account.id)
                raise InvalidCredentialsError(failure_reason=FailureReason.INVALID_PASSWORD)
            self.passwords.ensure_strong(new_password)
            new_hash = await self.passwords.hash_async(new_password)
            self.store.update_password(account.id, new_hash)
            revoked = self._end_all_sessions(account.id)
            logger.info("password_changed", account_id=account.id, sessions_revoked=revoked)

    # oauth
    async def authenticate_with_oauth(
        self,
        profile: OAuthProfile,
        *,
        origin_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> AuthResult:
        with self._internal_errors("authenticate_with_oauth"):
            account = await self.oauth_strategy.authenticate(profile)
            now = self._now()
            self.store.record_login(account.id, now)
            account.last_login_at = now
            logger.info("oauth_login_succeeded", account_id=account.id, provider=profile.provider)
            return self._issue_session(
                account,
                remember_me=remember_me,
                origin_ip=origin_ip,
                user_agent=user_agent,
            )

    # request authentication
    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.tokens.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")
        claims = self.tokens.verify_access(token)
        return AuthContext(
            account_id=claims.account_id,
            email=claims.email,
            is_verified=claims.is_verified,
            subscription_tier=claims.subscription_tier,
        )

    async def get_account_view(self, account_id: str) -> AccountView:
        with self._internal_errors("get_account_view"):
            account = self.store.get_account(account_id)
            if not account:
                raise AccountNotFoundError()
            return AccountView.from_account(account)

    # maintenance
    def cleanup_expired_state(self) -> Dict[str, Any]:
        """Prune dead refresh tokens, spent artifacts and old login attempts.

        Returns per-kind removal counts.
        """
        now = self._now()
        counts = {
            "refresh_tokens": self.ledger.prune(now),
            "artifacts": self.store.prune_artifacts(now),
            "login_attempts": self.login_guard.prune(),
        }
        logger.info("auth_state_cleanup", **counts)
        return counts
