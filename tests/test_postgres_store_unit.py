"""PostgresStore unit tests against a recording fake pool (no database)."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from conftest import REFRESH_SECRET
from kgotla.logging import get_logger
from kgotla.storage.common import TokenCipher
from kgotla.storage.errors import ConstraintViolation
from kgotla.storage.models import ArtifactKind, ArtifactPurpose, OAuthIdentity
from kgotla.storage.postgres import (
    OAUTH_UNIQUE_CONSTRAINT,
    _SCHEMA_STATEMENTS,
    PostgresStore,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _UniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint=None):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint = constraint

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        self.pool.connections += 1
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params, self.pool.connections))
        response = self.pool.responses.pop(0) if self.pool.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    """Records every statement and replays scripted cursors in order."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.executed = []
        self.connections = 0

    def connection(self):
        return FakeConnection(self)


def _store(pool: FakePool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.pool = pool
    store.logger = get_logger(__name__)
    store._token_cipher = TokenCipher(REFRESH_SECRET)
    return store


def _refresh_row(**overrides):
    row = {
        "id": "rt-2",
        "account_id": "acct-1",
        "token_hash": "new-hash",
        "issued_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "revoked": False,
        "revoked_at": None,
        "origin_ip": "10.0.0.1",
        "device_info": "firefox",
    }
    row.update(overrides)
    return row


class TestSchema:
    """Schema bootstrap."""

    def test_ensure_schema_runs_every_statement(self):
        pool = FakePool()
        _store(pool)._ensure_schema()

        assert len(pool.executed) == len(_SCHEMA_STATEMENTS)
        assert any("lower(email)" in sql for sql, _, _ in pool.executed)
        assert any("WHERE NOT consumed" in sql for sql, _, _ in pool.executed)


class TestAccounts:
    """Constraint translation on account creation."""

    def test_duplicate_email_maps_to_email_field(self):
        store = _store(FakePool([_UniqueViolation("auth_account_email_key")]))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_account("Dup@Example.com", "hash")

        assert exc_info.value.field == "email"

    def test_duplicate_oauth_identity_maps_to_provider_field(self):
        store = _store(FakePool([FakeCursor(), _UniqueViolation(OAUTH_UNIQUE_CONSTRAINT)]))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_account(
                "new@example.com",
                None,
                oauth=OAuthIdentity(provider="google", provider_user_id="g-1"),
            )

        assert exc_info.value.field == "provider_user_id"

    def test_email_lookup_is_case_insensitive(self):
        pool = FakePool()
        assert _store(pool).get_account_by_email("Mixed@Example.COM") is None

        sql, params, _ = pool.executed[0]
        assert "lower(email) = %s" in sql
        assert params == ("mixed@example.com",)


class TestOAuthLinks:
    """Provider tokens are encrypted on write and decrypted on read."""

    def test_tokens_encrypted_in_insert(self):
        pool = FakePool()
        store = _store(pool)
        cipher = TokenCipher(REFRESH_SECRET)
        pool.responses = [
            FakeCursor(
                [
                    {
                        "id": "link-1",
                        "account_id": "acct-1",
                        "provider": "google",
                        "provider_user_id": "g-1",
                        "access_token": cipher.encrypt("ya29.token"),
                        "refresh_token": None,
                        "token_expires_at": None,
                        "scope": None,
                        "linked_at": NOW,
                        "updated_at": None,
                    }
                ]
            )
        ]

        link = store.create_oauth_link(
            "acct-1", OAuthIdentity(provider="google", provider_user_id="g-1", access_token="ya29.token")
        )

        _, params, _ = pool.executed[0]
        assert "ya29.token" not in params
        assert link.access_token == "ya29.token"


class TestRefreshRotation:
    """Conditional revoke-then-insert."""

    def test_rotation_of_inactive_token_writes_nothing(self):
        pool = FakePool([FakeCursor()])

        assert _store(pool).rotate_refresh_token("old-hash", "new-hash", NOW, NOW) is None
        assert len(pool.executed) == 1
        sql, _, _ = pool.executed[0]
        assert sql.startswith("UPDATE auth_refresh_token")
        assert "revoked = FALSE AND expires_at > %s" in sql

    def test_rotation_inherits_origin_in_one_connection(self):
        pool = FakePool(
            [
                FakeCursor([{"account_id": "acct-1", "origin_ip": "10.0.0.1", "device_info": "firefox"}]),
                FakeCursor([_refresh_row()]),
            ]
        )

        record = _store(pool).rotate_refresh_token("old-hash", "new-hash", NOW + timedelta(days=7), NOW)

        assert record.token_hash == "new-hash"
        update, insert = pool.executed
        assert update[2] == insert[2]
        assert insert[0].startswith("INSERT INTO auth_refresh_token")
        assert insert[1][1:3] == ("acct-1", "new-hash")
        assert insert[1][5:] == ("10.0.0.1", "firefox")

    def test_revoke_if_active_returns_none_when_no_row(self):
        pool = FakePool([FakeCursor()])

        assert _store(pool).revoke_refresh_token_if_active("hash", NOW) is None


class TestArtifacts:
    """Artifact replacement and lookups."""

    def test_create_artifact_locks_invalidates_then_inserts(self):
        row = {
            "id": "art-1",
            "email": "a@example.com",
            "purpose": "email_verification",
            "kind": "code",
            "secret_hash": "h",
            "expires_at": NOW + timedelta(minutes=10),
            "consumed": False,
            "attempts": 0,
            "created_at": NOW,
            "consumed_at": None,
        }
        pool = FakePool([FakeCursor(), FakeCursor(), FakeCursor([row])])

        artifact = _store(pool).create_artifact(
            "A@example.com",
            ArtifactPurpose.EMAIL_VERIFICATION,
            ArtifactKind.CODE,
            "h",
            NOW + timedelta(minutes=10),
            now=NOW,
        )

        lock, invalidate, insert = pool.executed
        assert "pg_advisory_xact_lock" in lock[0]
        assert lock[1] == ("email_verification:a@example.com",)
        assert invalidate[0].startswith("UPDATE auth_verification_artifact SET consumed = TRUE")
        assert insert[0].startswith("INSERT INTO auth_verification_artifact")
        assert lock[2] == invalidate[2] == insert[2]
        assert artifact.kind == ArtifactKind.CODE

    def test_find_active_applies_attempt_cap(self):
        pool = FakePool()

        _store(pool).find_active_artifact(
            "a@example.com", ArtifactPurpose.PASSWORD_RESET, NOW, max_attempts=5
        )

        sql, params, _ = pool.executed[0]
        assert "attempts < %s" in sql
        assert params == ["a@example.com", "password_reset", NOW, 5]

    def test_consume_is_conditional(self):
        pool = FakePool([FakeCursor()])

        assert _store(pool).consume_artifact("art-1", NOW) is False
        assert "consumed = FALSE" in pool.executed[0][0]


class TestLoginAttempts:
    """Failure counting queries."""

    def test_union_of_email_and_ip(self):
        pool = FakePool([FakeCursor([{"failures": 4}])])

        assert _store(pool).count_recent_failures("A@x.com", "1.2.3.4", NOW) == 4
        sql, params, _ = pool.executed[0]
        assert "(email = %s OR origin_ip = %s)" in sql
        assert params == ("email_not_verified", NOW, "a@x.com", "1.2.3.4")
        assert "failure_reason IS DISTINCT FROM %s" in sql

    def test_email_only_without_ip(self):
        pool = FakePool([FakeCursor([{"failures": 0}])])

        assert _store(pool).count_recent_failures("a@x.com", None, NOW) == 0
        assert "origin_ip" not in pool.executed[0][0]

    def test_empty_ip_falls_back_to_email_only(self):
        pool = FakePool([FakeCursor([{"failures": 1}])])

        assert _store(pool).count_recent_failures("a@x.com", "", NOW) == 1
        sql, params, _ = pool.executed[0]
        assert "origin_ip" not in sql
        assert params == ("email_not_verified", NOW, "a@x.com")

    def test_prune_returns_rowcount(self):
        pool = FakePool([FakeCursor(rowcount=7)])

        assert _store(pool).prune_login_attempts(NOW) == 7
