from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from kgotla.logging import get_logger
from kgotla.storage.common import TokenCipher, ensure_aware, normalize_email, utcnow
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

# Constraint names referenced when translating unique violations
EMAIL_UNIQUE_INDEX = "auth_account_email_key"
OAUTH_UNIQUE_CONSTRAINT = "auth_oauth_link_provider_key"
ARTIFACT_ACTIVE_INDEX = "auth_artifact_active_key"

# Correct password on an unverified account; audited but not a guessing failure
_UNCOUNTED_FAILURE = FailureReason.EMAIL_NOT_VERIFIED.value

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        first_name TEXT,
        last_name TEXT,
        profile_image_url TEXT,
        subscription_tier TEXT NOT NULL DEFAULT 'free',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    f"CREATE UNIQUE INDEX IF NOT EXISTS {EMAIL_UNIQUE_INDEX} ON auth_account (lower(email))",
    f"""
    CREATE TABLE IF NOT EXISTS auth_oauth_link (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        access_token TEXT,
        refresh_token TEXT,
        token_expires_at TIMESTAMPTZ,
        scope TEXT,
        linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CONSTRAINT {OAUTH_UNIQUE_CONSTRAINT} UNIQUE (provider, provider_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        origin_ip TEXT,
        device_info TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_token_account_idx ON auth_refresh_token (account_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_verification_artifact (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        kind TEXT NOT NULL,
        secret_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        consumed_at TIMESTAMPTZ
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {ARTIFACT_ACTIVE_INDEX}
        ON auth_verification_artifact (email, purpose) WHERE NOT consumed
    """,
    "CREATE INDEX IF NOT EXISTS auth_artifact_secret_idx ON auth_verification_artifact (purpose, secret_hash)",
    """
    CREATE TABLE IF NOT EXISTS auth_login_attempt (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        origin_ip TEXT,
        success BOOLEAN NOT NULL,
        failure_reason TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_login_attempt_email_idx ON auth_login_attempt (email, created_at)",
    "CREATE INDEX IF NOT EXISTS auth_login_attempt_ip_idx ON auth_login_attempt (origin_ip, created_at)",
)


class PostgresStore:
    """Postgres-backed credential store, refresh-token ledger and login-attempt log.

    Row-level concurrency rests on the database: a case-insensitive unique
    index on email, conditional ``UPDATE ... RETURNING`` for revocation and
    artifact consumption, and a per-email advisory lock plus partial unique
    index for artifact replacement.
    """

    def __init__(
        self,
        dsn: str,
        *,
        token_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._token_cipher = TokenCipher(token_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("auth_schema_ready")

    @staticmethod
    def _constraint_name(exc: errors.UniqueViolation) -> Optional[str]:
        diag = getattr(exc, "diag", None)
        return getattr(diag, "constraint_name", None) if diag else None

    # row mappers
    def _row_to_account(self, row: Dict[str, Any]) -> Account:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        last_login = row.get("last_login_at")
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            profile_image_url=row.get("profile_image_url"),
            subscription_tier=row.get("subscription_tier") or "free",
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            last_login_at=ensure_aware(last_login) if last_login else None,
            meta=meta,
        )

    def _row_to_link(self, row: Dict[str, Any]) -> OAuthLink:
        expires = row.get("token_expires_at")
        updated = row.get("updated_at")
        return OAuthLink(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            access_token=self._token_cipher.decrypt(row.get("access_token")),
            refresh_token=self._token_cipher.decrypt(row.get("refresh_token")),
            token_expires_at=ensure_aware(expires) if expires else None,
            scope=row.get("scope"),
            linked_at=ensure_aware(row.get("linked_at") or utcnow()),
            updated_at=ensure_aware(updated) if updated else None,
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshTokenRecord:
        revoked_at = row.get("revoked_at")
        return RefreshTokenRecord(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            issued_at=ensure_aware(row["issued_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            revoked=bool(row.get("revoked", False)),
            revoked_at=ensure_aware(revoked_at) if revoked_at else None,
            origin_ip=row.get("origin_ip"),
            device_info=row.get("device_info"),
        )

    @staticmethod
    def _row_to_artifact(row: Dict[str, Any]) -> VerificationArtifact:
        consumed_at = row.get("consumed_at")
        return VerificationArtifact(
            id=str(row["id"]),
            email=row["email"],
            purpose=ArtifactPurpose(row["purpose"]),
            kind=ArtifactKind(row["kind"]),
            secret_hash=row["secret_hash"],
            expires_at=ensure_aware(row["expires_at"]),
            consumed=bool(row.get("consumed", False)),
            attempts=int(row.get("attempts") or 0),
            created_at=ensure_aware(row.get("created_at") or utcnow()),
            consumed_at=ensure_aware(consumed_at) if consumed_at else None,
        )

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
        meta: Optional[dict] = None,
        oauth: Optional[OAuthIdentity] = None,
    ) -> Account:
        if password_hash is None and oauth is None:
            raise ConstraintViolation(
                "account without password requires an oauth identity",
                {"field": "password_hash"},
            )
        account = Account(
            id=new_id(),
            email=normalize_email(email),
            password_hash=password_hash,
            email_verified=email_verified,
            first_name=first_name,
            last_name=last_name,
            profile_image_url=profile_image_url,
            subscription_tier=subscription_tier,
            created_at=utcnow(),
            meta=dict(meta) if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash, email_verified, first_name, last_name,
                                              profile_image_url, subscription_tier, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.email_verified,
                        account.first_name,
                        account.last_name,
                        account.profile_image_url,
                        account.subscription_tier,
                        account.created_at,
                        json.dumps(account.meta) if account.meta else None,
                    ),
                )
                if oauth is not None:
                    self._insert_link(conn, account.id, oauth)
        except errors.UniqueViolation as exc:
            if self._constraint_name(exc) == OAUTH_UNIQUE_CONSTRAINT:
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "provider_user_id"}
                ) from exc
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return account

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_account SET password_hash = %s WHERE id = %s",
                (password_hash, account_id),
            )
            return result.rowcount > 0

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_account SET email_verified = TRUE WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def record_login(self, account_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_account SET last_login_at = %s WHERE id = %s",
                (when, account_id),
            )

    # oauth links
    def _insert_link(self, conn, account_id: str, identity: OAuthIdentity) -> Dict[str, Any]:
        return conn.execute(
            """
            INSERT INTO auth_oauth_link (id, account_id, provider, provider_user_id, access_token,
                                         refresh_token, token_expires_at, scope, linked_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
            RETURNING *
            """,
            (
                new_id(),
                account_id,
                identity.provider,
                identity.provider_user_id,
                self._token_cipher.encrypt(identity.access_token),
                self._token_cipher.encrypt(identity.refresh_token),
                identity.token_expires_at,
                identity.scope,
            ),
        ).fetchone()

    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_oauth_link WHERE provider = %s AND provider_user_id = %s",
                (provider, provider_user_id),
            ).fetchone()
        return self._row_to_link(row) if row else None

    def list_oauth_links(self, account_id: str) -> List[OAuthLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_oauth_link WHERE account_id = %s ORDER BY linked_at",
                (account_id,),
            ).fetchall()
        return [self._row_to_link(row) for row in rows]

    def create_oauth_link(self, account_id: str, identity: OAuthIdentity) -> OAuthLink:
        try:
            with self._connect() as conn:
                row = self._insert_link(conn, account_id, identity)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "oauth identity already linked", {"field": "provider_user_id"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"account_id": account_id}
            ) from exc
        return self._row_to_link(row)

    def update_oauth_link_tokens(
        self,
        link_id: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime] = None,
        scope: Optional[str] = None,
    ) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_oauth_link
                SET access_token = %s,
                    refresh_token = COALESCE(%s, refresh_token),
                    token_expires_at = %s,
                    scope = COALESCE(%s, scope),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    self._token_cipher.encrypt(access_token),
                    self._token_cipher.encrypt(refresh_token) if refresh_token else None,
                    token_expires_at,
                    scope,
                    link_id,
                ),
            ).fetchone()
        return self._row_to_link(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_refresh_token (id, account_id, token_hash, issued_at, expires_at, origin_ip, device_info)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        account_id,
                        token_hash,
                        issued_at or utcnow(),
                        expires_at,
                        origin_ip,
                        device_info,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"account_id": account_id}
            ) from exc
        return self._row_to_refresh_token(row)

    def get_active_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_refresh_token
                WHERE token_hash = %s AND revoked = FALSE AND expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token_if_active(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE token_hash = %s AND revoked = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

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
        """Conditional revoke of the old row and insert of the new one in one transaction.

        A concurrent rotation of the same token blocks on the row lock and then
        fails the ``revoked = FALSE`` predicate, so at most one caller wins.
        """
        try:
            with self._connect() as conn:
                old = conn.execute(
                    """
                    UPDATE auth_refresh_token SET revoked = TRUE, revoked_at = %s
                    WHERE token_hash = %s AND revoked = FALSE AND expires_at > %s
                    RETURNING account_id, origin_ip, device_info
                    """,
                    (now, old_hash, now),
                ).fetchone()
                if not old:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO auth_refresh_token (id, account_id, token_hash, issued_at, expires_at, origin_ip, device_info)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        old["account_id"],
                        new_hash,
                        now,
                        new_expires_at,
                        origin_ip if origin_ip is not None else old.get("origin_ip"),
                        device_info if device_info is not None else old.get("device_info"),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            ) from exc
        return self._row_to_refresh_token(row)

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE account_id = %s AND revoked = FALSE
                """,
                (now, account_id),
            )
            return result.rowcount

    def prune_refresh_tokens(self, older_than: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_refresh_token
                WHERE expires_at < %s OR (revoked = TRUE AND revoked_at < %s)
                """,
                (older_than, older_than),
            )
            return result.rowcount

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
        normalized = normalize_email(email)
        when = now or utcnow()
        with self._connect() as conn:
            # Serialize replacement per (email, purpose) for the rest of the transaction
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"{purpose.value}:{normalized}",),
            )
            conn.execute(
                """
                UPDATE auth_verification_artifact SET consumed = TRUE, consumed_at = %s
                WHERE email = %s AND purpose = %s AND consumed = FALSE
                """,
                (when, normalized, purpose.value),
            )
            row = conn.execute(
                """
                INSERT INTO auth_verification_artifact (id, email, purpose, kind, secret_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), normalized, purpose.value, kind.value, secret_hash, expires_at, when),
            ).fetchone()
        return self._row_to_artifact(row)

    def find_active_artifact(
        self,
        email: str,
        purpose: ArtifactPurpose,
        now: datetime,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[VerificationArtifact]:
        query = """
            SELECT * FROM auth_verification_artifact
            WHERE email = %s AND purpose = %s AND consumed = FALSE AND expires_at > %s
        """
        params: list[Any] = [normalize_email(email), purpose.value, now]
        if max_attempts is not None:
            query += " AND attempts < %s"
            params.append(max_attempts)
        query += " ORDER BY created_at DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_artifact(row) if row else None

    def find_active_artifact_by_secret(
        self,
        purpose: ArtifactPurpose,
        secret_hash: str,
        now: datetime,
        *,
        max_attempts: Optional[int] = None,
    ) -> Optional[VerificationArtifact]:
        query = """
            SELECT * FROM auth_verification_artifact
            WHERE purpose = %s AND secret_hash = %s AND consumed = FALSE AND expires_at > %s
        """
        params: list[Any] = [purpose.value, secret_hash, now]
        if max_attempts is not None:
            query += " AND attempts < %s"
            params.append(max_attempts)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_artifact(row) if row else None

    def increment_artifact_attempts(self, artifact_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_verification_artifact SET attempts = attempts + 1
                WHERE id = %s RETURNING attempts
                """,
                (artifact_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def consume_artifact(self, artifact_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_verification_artifact SET consumed = TRUE, consumed_at = %s
                WHERE id = %s AND consumed = FALSE AND expires_at > %s
                RETURNING id
                """,
                (now, artifact_id, now),
            ).fetchone()
        return row is not None

    def prune_artifacts(self, older_than: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_verification_artifact
                WHERE expires_at < %s OR (consumed = TRUE AND consumed_at < %s)
                """,
                (older_than, older_than),
            )
            return result.rowcount

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_login_attempt (id, email, origin_ip, success, failure_reason, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.email,
                    attempt.origin_ip,
                    attempt.success,
                    attempt.failure_reason.value if attempt.failure_reason else None,
                    attempt.user_agent,
                    attempt.created_at,
                ),
            )
        return attempt

    def count_recent_failures(
        self, email: str, origin_ip: Optional[str], since: datetime
    ) -> int:
        if origin_ip:
            query = """
                SELECT COUNT(*) AS failures FROM auth_login_attempt
                WHERE success = FALSE AND failure_reason IS DISTINCT FROM %s
                  AND created_at >= %s AND (email = %s OR origin_ip = %s)
            """
            params: tuple = (_UNCOUNTED_FAILURE, since, normalize_email(email), origin_ip)
        else:
            query = """
                SELECT COUNT(*) AS failures FROM auth_login_attempt
                WHERE success = FALSE AND failure_reason IS DISTINCT FROM %s
                  AND created_at >= %s AND email = %s
            """
            params = (_UNCOUNTED_FAILURE, since, normalize_email(email))
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["failures"]) if row else 0

    def prune_login_attempts(self, older_than: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_login_attempt WHERE created_at < %s", (older_than,)
            )
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
