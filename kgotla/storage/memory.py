from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from kgotla.logging import get_logger
from kgotla.storage.common import TokenCipher, normalize_email, utcnow
from kgotla.storage.errors import ConstraintViolation
from kgotla.storage.models import (
    Account,
    ArtifactKind,
    ArtifactPurpose,
    FailureReason,
    LoginAttempt,
    OAuthIdentity,
    OAuthLink,
    RefreshTokenRecord,
    VerificationArtifact,
    new_id,
)


class MemoryStore:
    """In-process credential store, refresh-token ledger and login-attempt log.

    Every operation runs under one re-entrant lock, which gives the same
    row-level guarantees the Postgres store gets from constraints and
    conditional updates. When ``fs_root`` is set the full state is written to
    ``<fs_root>/state/auth_store.json`` after each mutation and reloaded on
    start.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        token_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.oauth_links: Dict[str, OAuthLink] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.artifacts: Dict[str, VerificationArtifact] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock so helpers can call public methods while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        material = (
            token_encryption_key
            or os.getenv("OAUTH_TOKEN_ENCRYPTION_KEY")
            or os.getenv("JWT_REFRESH_SECRET")
        )
        if not material:
            raise RuntimeError(
                "Set OAUTH_TOKEN_ENCRYPTION_KEY (or JWT_REFRESH_SECRET) to store provider tokens"
            )
        self._token_cipher = TokenCipher(material)
        self._load_state()

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
        subscription_tier: str = "free",
        email_verified: bool = False,
        meta: Optional[Dict] = None,
        oauth: Optional[OAuthIdentity] = None,
    ) -> Account:
        normalized = normalize_email(email)
        if password_hash is None and oauth is None:
            raise ConstraintViolation(
                "account without password requires an oauth identity",
                {"field": "password_hash"},
            )
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if oauth is not None and self._find_link(oauth.provider, oauth.provider_user_id):
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "provider_user_id"}
                )
            account = Account(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                email_verified=email_verified,
                first_name=first_name,
                last_name=last_name,
                profile_image_url=profile_image_url,
                subscription_tier=subscription_tier,
                meta=dict(meta) if meta else {},
            )
            self.accounts[account.id] = account
            if oauth is not None:
                self._insert_link(account.id, oauth)
            self._persist_state()
            return replace(account)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            found = next((a for a in self.accounts.values() if a.email == normalized), None)
            return replace(found) if found else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            found = self.accounts.get(account_id)
            return replace(found) if found else None

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            self._persist_state()
            return True

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            self._persist_state()
            return replace(account)

    def record_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_login_at = when
            self._persist_state()

    # oauth links
    def _find_link(self, provider: str, provider_user_id: str) -> Optional[OAuthLink]:
        return next(
            (
                link
                for link in self.oauth_links.values()
                if link.provider == provider and link.provider_user_id == provider_user_id
            ),
            None,
        )

    def _insert_link(self, account_id: str, identity: OAuthIdentity) -> OAuthLink:
        link = OAuthLink(
            id=new_id(),
            account_id=account_id,
            provider=identity.provider,
            provider_user_id=identity.provider_user_id,
            access_token=self._token_cipher.encrypt(identity.access_token),
            refresh_token=self._token_cipher.encrypt(identity.refresh_token),
            token_expires_at=identity.token_expires_at,
            scope=identity.scope,
        )
        self.oauth_links[link.id] = link
        return link

    def _decrypted_link(self, link: OAuthLink) -> OAuthLink:
        return replace(
            link,
            access_token=self._token_cipher.decrypt(link.access_token),
            refresh_token=self._token_cipher.decrypt(link.refresh_token),
        )

    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthLink]:
        with self._data_lock:
            link = self._find_link(provider, provider_user_id)
            return self._decrypted_link(link) if link else None

    def list_oauth_links(self, account_id: str) -> List[OAuthLink]:
        with self._data_lock:
            return [
                self._decrypted_link(link)
                for link in self.oauth_links.values()
                if link.account_id == account_id
            ]

    def create_oauth_link(self, account_id: str, identity: OAuthIdentity) -> OAuthLink:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if self._find_link(identity.provider, identity.provider_user_id):
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "provider_user_id"}
                )
            link = self._insert_link(account_id, identity)
            self._persist_state()
            return self._decrypted_link(link)

    def update_oauth_link_tokens(
        self,
        link_id: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime] = None,
        scope: Optional[str] = None,
    ) -> Optional[OAuthLink]:
        with self._data_lock:
            link = self.oauth_links.get(link_id)
            if not link:
                return None
            link.access_token = self._token_cipher.encrypt(access_token)
            # Providers omit the refresh token on repeat consent; keep the old one
            if refresh_token:
                link.refresh_token = self._token_cipher.encrypt(refresh_token)
            link.token_expires_at = token_expires_at
            if scope is not None:
                link.scope = scope
            link.updated_at = utcnow()
            self._persist_state()
            return self._decrypted_link(link)

    # refresh-token ledger
    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        origin_ip: Optional[str] = None,
        device_info: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> RefreshTokenRecord:
        with self._data_lock:
            record = self._insert_refresh_token(
                account_id,
                token_hash,
                expires_at,
                origin_ip=origin_ip,
                device_info=device_info,
                issued_at=issued_at or utcnow(),
            )
            self._persist_state()
            return replace(record)

    def _insert_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        origin_ip: Optional[str],
        device_info: Optional[str],
        issued_at: datetime,
    ) -> RefreshTokenRecord:
        if account_id not in self.accounts:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        if token_hash in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        record = RefreshTokenRecord(
            id=new_id(),
            account_id=account_id,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=expires_at,
            origin_ip=origin_ip,
            device_info=device_info,
        )
        self.refresh_tokens[token_hash] = record
        return record

    def get_active_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record and record.is_active(now):
                return replace(record)
            return None

    def revoke_refresh_token_if_active(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Flip ``revoked`` only if the row is still active; returns the row on success."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or not record.is_active(now):
                return None
            record.revoked = True
            record.revoked_at = now
            self._persist_state()
            return replace(record)

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: datetime,
        *,
        origin_ip: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> Optional[RefreshTokenRecord]:
        """Revoke ``old_hash`` and insert ``new_hash`` as one step.

        Returns None, leaving the ledger untouched, when the old token is no
        longer active.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_hash)
            if not old or not old.is_active(now):
                return None
            new_record = self._insert_refresh_token(
                old.account_id,
                new_hash,
                new_expires_at,
                origin_ip=origin_ip if origin_ip is not None else old.origin_ip,
                device_info=device_info if device_info is not None else old.device_info,
                issued_at=now,
            )
            old.revoked = True
            old.revoked_at = now
            self._persist_state()
            return replace(new_record)

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.account_id == account_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def prune_refresh_tokens(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.expires_at < older_than
                or (record.revoked and record.revoked_at and record.revoked_at < older_than)
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # verification and reset artifacts
    def create_artifact(
        self,
        email: str,
        purpose: ArtifactPurpose,
        kind: ArtifactKind,
        secret_hash: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> VerificationArtifact:
        """Insert a new artifact after invalidating every open one for the same email."""
        normalized = normalize_email(email)
        when = now or utcnow()
        with self._data_lock:
            for existing in self.artifacts.values():
                if (
                    existing.email == normalized
                    and existing.purpose == purpose
                    and not existing.consumed
                ):
                    existing.consumed = True
                    existing.consumed_at = when
            artifact = VerificationArtifact(
                id=new_id(),
                email=normalized,
                purpose=purpose,
                kind=kind,
                secret_hash=secret_hash,
                expires_at=expires_at,
                created_at=when,
            )
            self.artifacts[artifact.id] = artifact
            self._persist_state()
            return replace(artifact)

    def find_active_artifact(
        self,
        email: str,
        purpose: ArtifactPurpose,
        now: datetime,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[VerificationArtifact]:
        normalized = normalize_email(email)
        with self._data_lock:
            candidates = [
                a
                for a in self.artifacts.values()
                if a.email == normalized
                and a.purpose == purpose
                and a.is_active(now, max_attempts)
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda a: a.created_at)
            return replace(newest)

    def find_active_artifact_by_secret(
        self,
        purpose: ArtifactPurpose,
        secret_hash: str,
        now: datetime,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[VerificationArtifact]:
        with self._data_lock:
            found = next(
                (
                    a
                    for a in self.artifacts.values()
                    if a.purpose == purpose
                    and a.secret_hash == secret_hash
                    and a.is_active(now, max_attempts)
                ),
                None,
            )
            return replace(found) if found else None

    def increment_artifact_attempts(self, artifact_id: str) -> int:
        with self._data_lock:
            artifact = self.artifacts.get(artifact_id)
            if not artifact:
                return 0
            artifact.attempts += 1
            self._persist_state()
            return artifact.attempts

    def consume_artifact(self, artifact_id: str, now: datetime) -> bool:
        """Mark the artifact used; False when it was already used or has expired."""
        with self._data_lock:
            artifact = self.artifacts.get(artifact_id)
            if not artifact or not artifact.is_active(now):
                return False
            artifact.consumed = True
            artifact.consumed_at = now
            self._persist_state()
            return True

    def prune_artifacts(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                artifact_id
                for artifact_id, artifact in self.artifacts.items()
                if artifact.expires_at < older_than
                or (artifact.consumed and artifact.consumed_at and artifact.consumed_at < older_than)
            ]
            for artifact_id in stale:
                self.artifacts.pop(artifact_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # login attempts
    def record_login_attempt(
        self,
        email: str,
        success: bool,
        *,
        origin_ip: Optional[str] = None,
        failure_reason: Optional[FailureReason] = None,
        user_agent: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=new_id(),
            email=normalize_email(email),
            success=success,
            origin_ip=origin_ip,
            failure_reason=failure_reason,
            user_agent=user_agent,
            created_at=when or utcnow(),
        )
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()
        return replace(attempt)

    def count_recent_failures(
        self, email: str, origin_ip: Optional[str], since: datetime
    ) -> int:
        normalized = normalize_email(email)
        with self._data_lock:
            return sum(
                1
                for attempt in self.login_attempts
                if not attempt.success
                and attempt.failure_reason != FailureReason.EMAIL_NOT_VERIFIED
                and attempt.created_at >= since
                and (
                    attempt.email == normalized
                    or (origin_ip and attempt.origin_ip == origin_ip)
                )
            )

    def prune_login_attempts(self, older_than: datetime) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [
                attempt for attempt in self.login_attempts if attempt.created_at >= older_than
            ]
            removed = before - len(self.login_attempts)
            if removed:
                self._persist_state()
            return removed

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "oauth_links": [self._serialize_link(link) for link in self.oauth_links.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "artifacts": [self._serialize_artifact(a) for a in self.artifacts.values()],
            "login_attempts": [
                self._serialize_login_attempt(a) for a in self.login_attempts
            ],
        }
        try:
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.oauth_links = {
            link["id"]: self._deserialize_link(link) for link in data.get("oauth_links", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.artifacts = {
            a["id"]: self._deserialize_artifact(a) for a in data.get("artifacts", [])
        }
        self.login_attempts = [
            self._deserialize_login_attempt(a) for a in data.get("login_attempts", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "email_verified": account.email_verified,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "profile_image_url": account.profile_image_url,
            "subscription_tier": account.subscription_tier,
            "created_at": self._serialize_datetime(account.created_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "meta": account.meta,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            email_verified=bool(data.get("email_verified", False)),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            profile_image_url=data.get("profile_image_url"),
            subscription_tier=data.get("subscription_tier", "free"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            meta=data.get("meta"),
        )

    def _serialize_link(self, link: OAuthLink) -> dict:
        # Tokens stay encrypted on disk
        return {
            "id": link.id,
            "account_id": link.account_id,
            "provider": link.provider,
            "provider_user_id": link.provider_user_id,
            "access_token": link.access_token,
            "refresh_token": link.refresh_token,
            "token_expires_at": self._serialize_datetime(link.token_expires_at),
            "scope": link.scope,
            "linked_at": self._serialize_datetime(link.linked_at),
            "updated_at": self._serialize_datetime(link.updated_at),
        }

    def _deserialize_link(self, data: dict) -> OAuthLink:
        return OAuthLink(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            provider=data["provider"],
            provider_user_id=data["provider_user_id"],
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            token_expires_at=self._deserialize_datetime(data.get("token_expires_at")),
            scope=data.get("scope"),
            linked_at=self._deserialize_datetime(data.get("linked_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "account_id": record.account_id,
            "token_hash": record.token_hash,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "origin_ip": record.origin_ip,
            "device_info": record.device_info,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            token_hash=data["token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            origin_ip=data.get("origin_ip"),
            device_info=data.get("device_info"),
        )

    def _serialize_artifact(self, artifact: VerificationArtifact) -> dict:
        return {
            "id": artifact.id,
            "email": artifact.email,
            "purpose": artifact.purpose.value,
            "kind": artifact.kind.value,
            "secret_hash": artifact.secret_hash,
            "expires_at": self._serialize_datetime(artifact.expires_at),
            "consumed": artifact.consumed,
            "attempts": artifact.attempts,
            "created_at": self._serialize_datetime(artifact.created_at),
            "consumed_at": self._serialize_datetime(artifact.consumed_at),
        }

    def _deserialize_artifact(self, data: dict) -> VerificationArtifact:
        return VerificationArtifact(
            id=str(data["id"]),
            email=data["email"],
            purpose=ArtifactPurpose(data["purpose"]),
            kind=ArtifactKind(data["kind"]),
            secret_hash=data["secret_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            consumed=bool(data.get("consumed", False)),
            attempts=int(data.get("attempts", 0)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )

    def _serialize_login_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "id": attempt.id,
            "email": attempt.email,
            "success": attempt.success,
            "origin_ip": attempt.origin_ip,
            "failure_reason": attempt.failure_reason.value if attempt.failure_reason else None,
            "user_agent": attempt.user_agent,
            "created_at": self._serialize_datetime(attempt.created_at),
        }

    def _deserialize_login_attempt(self, data: dict) -> LoginAttempt:
        reason = data.get("failure_reason")
        return LoginAttempt(
            id=str(data["id"]),
            email=data["email"],
            success=bool(data["success"]),
            origin_ip=data.get("origin_ip"),
            failure_reason=FailureReason(reason) if reason else None,
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
