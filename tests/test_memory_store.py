"""Tests for the in-process credential store and its JSON persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import REFRESH_SECRET
from kgotla.storage.errors import ConstraintViolation
from kgotla.storage.memory import MemoryStore
from kgotla.storage.models import ArtifactKind, ArtifactPurpose, FailureReason, OAuthIdentity

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _google(uid: str = "g-1", **kwargs) -> OAuthIdentity:
    return OAuthIdentity(provider="google", provider_user_id=uid, **kwargs)


class TestAccounts:
    """Account creation and lookup."""

    def test_email_is_case_insensitive_and_unique(self, memory_store):
        account = memory_store.create_account("Mixed@Example.COM", "hash")

        assert account.email == "mixed@example.com"
        assert memory_store.get_account_by_email("MIXED@example.com").id == account.id
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_account("mixed@example.com", "other")
        assert exc_info.value.field == "email"

    def test_passwordless_account_needs_oauth_identity(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("nopass@example.com", None)

        account = memory_store.create_account("oauth@example.com", None, oauth=_google())
        assert account.has_password is False
        assert memory_store.get_oauth_link("google", "g-1").account_id == account.id

    def test_returned_accounts_are_copies(self, memory_store):
        account = memory_store.create_account("copy@example.com", "hash")
        account.email_verified = True

        assert memory_store.get_account(account.id).email_verified is False

    def test_mark_verified_and_record_login(self, memory_store):
        account = memory_store.create_account("v@example.com", "hash")

        verified = memory_store.mark_email_verified(account.id)
        memory_store.record_login(account.id, NOW)

        assert verified.email_verified is True
        assert memory_store.get_account(account.id).last_login_at == NOW
        assert memory_store.mark_email_verified("missing") is None
        assert memory_store.update_password("missing", "hash") is False


class TestOAuthLinks:
    """Provider identity links and encrypted provider tokens."""

    def test_provider_identity_maps_to_one_account(self, memory_store):
        first = memory_store.create_account("a@example.com", "hash")
        second = memory_store.create_account("b@example.com", "hash")
        memory_store.create_oauth_link(first.id, _google("shared"))

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_oauth_link(second.id, _google("shared"))
        assert exc_info.value.field == "provider_user_id"

    def test_provider_tokens_encrypted_at_rest(self, memory_store, tmp_path):
        account = memory_store.create_account("t@example.com", "hash")
        memory_store.create_oauth_link(account.id, _google(access_token="ya29.secret"))

        raw = (tmp_path / "state" / "auth_store.json").read_text()
        link = memory_store.get_oauth_link("google", "g-1")

        assert "ya29.secret" not in raw
        assert link.access_token == "ya29.secret"

    def test_update_tokens(self, memory_store):
        account = memory_store.create_account("u@example.com", "hash")
        link = memory_store.create_oauth_link(account.id, _google(access_token="old"))

        updated = memory_store.update_oauth_link_tokens(
            link.id, access_token="new", refresh_token=None, scope="email"
        )

        assert updated.access_token == "new"
        assert updated.scope == "email"
        assert len(memory_store.list_oauth_links(account.id)) == 1


class TestRefreshTokens:
    """Ledger rows with conditional revocation."""

    def test_rotate_is_single_use(self, memory_store):
        account = memory_store.create_account("r@example.com", "hash")
        memory_store.create_refresh_token(account.id, "old", NOW + timedelta(days=7))

        rotated = memory_store.rotate_refresh_token("old", "new", NOW + timedelta(days=7), NOW)
        again = memory_store.rotate_refresh_token("old", "newer", NOW + timedelta(days=7), NOW)

        assert rotated.token_hash == "new"
        assert again is None
        assert memory_store.get_active_refresh_token("old", NOW) is None
        assert memory_store.get_active_refresh_token("new", NOW) is not None
        assert memory_store.get_active_refresh_token("newer", NOW) is None

    def test_expired_token_is_not_active(self, memory_store):
        account = memory_store.create_account("e@example.com", "hash")
        memory_store.create_refresh_token(account.id, "tok", NOW + timedelta(minutes=1))

        assert memory_store.get_active_refresh_token("tok", NOW + timedelta(minutes=1)) is None
        assert memory_store.revoke_refresh_token_if_active("tok", NOW + timedelta(minutes=2)) is None

    def test_revoke_all_and_prune(self, memory_store):
        account = memory_store.create_account("p@example.com", "hash")
        for value in ("a", "b", "c"):
            memory_store.create_refresh_token(account.id, value, NOW + timedelta(days=1))

        assert memory_store.revoke_account_refresh_tokens(account.id, NOW) == 3
        assert memory_store.revoke_account_refresh_tokens(account.id, NOW) == 0
        assert memory_store.prune_refresh_tokens(NOW + timedelta(seconds=1)) == 3


class TestArtifacts:
    """Verification and reset artifacts."""

    def test_new_artifact_invalidates_previous(self, memory_store):
        first = memory_store.create_artifact(
            "x@example.com", ArtifactPurpose.EMAIL_VERIFICATION, ArtifactKind.CODE,
            "h1", NOW + timedelta(minutes=10), now=NOW,
        )
        second = memory_store.create_artifact(
            "X@example.com", ArtifactPurpose.EMAIL_VERIFICATION, ArtifactKind.LINK,
            "h2", NOW + timedelta(hours=24), now=NOW,
        )

        active = memory_store.find_active_artifact("x@example.com", ArtifactPurpose.EMAIL_VERIFICATION, NOW)
        assert active.id == second.id
        assert memory_store.find_active_artifact_by_secret(
            ArtifactPurpose.EMAIL_VERIFICATION, "h1", NOW
        ) is None
        assert memory_store.consume_artifact(first.id, NOW) is False

    def test_purposes_do_not_interfere(self, memory_store):
        memory_store.create_artifact(
            "y@example.com", ArtifactPurpose.EMAIL_VERIFICATION, ArtifactKind.CODE,
            "verify", NOW + timedelta(minutes=10), now=NOW,
        )
        memory_store.create_artifact(
            "y@example.com", ArtifactPurpose.PASSWORD_RESET, ArtifactKind.LINK,
            "reset", NOW + timedelta(hours=1), now=NOW,
        )

        assert memory_store.find_active_artifact("y@example.com", ArtifactPurpose.EMAIL_VERIFICATION, NOW)
        assert memory_store.find_active_artifact("y@example.com", ArtifactPurpose.PASSWORD_RESET, NOW)

    def test_attempt_cap_and_single_consume(self, memory_store):
        artifact = memory_store.create_artifact(
            "z@example.com", ArtifactPurpose.EMAIL_VERIFICATION, ArtifactKind.CODE,
            "h", NOW + timedelta(minutes=10), now=NOW,
        )
        for expected in range(1, 4):
            assert memory_store.increment_artifact_attempts(artifact.id) == expected

        assert memory_store.find_active_artifact(
            "z@example.com", ArtifactPurpose.EMAIL_VERIFICATION, NOW, max_attempts=3
        ) is None
        assert memory_store.consume_artifact(artifact.id, NOW) is True
        assert memory_store.consume_artifact(artifact.id, NOW) is False

    def test_expired_artifact_is_inactive_and_pruned(self, memory_store):
        memory_store.create_artifact(
            "old@example.com", ArtifactPurpose.PASSWORD_RESET, ArtifactKind.LINK,
            "h", NOW + timedelta(hours=1), now=NOW,
        )
        later = NOW + timedelta(hours=1)

        assert memory_store.find_active_artifact("old@example.com", ArtifactPurpose.PASSWORD_RESET, later) is None
        assert memory_store.prune_artifacts(later + timedelta(seconds=1)) == 1


class TestLoginAttempts:
    """Audit log counting."""

    def test_failures_counted_by_email_or_ip(self, memory_store):
        since = NOW - timedelta(minutes=15)
        memory_store.record_login_attempt("a@example.com", False, origin_ip="1.1.1.1", when=NOW)
        memory_store.record_login_attempt("b@example.com", False, origin_ip="2.2.2.2", when=NOW)
        memory_store.record_login_attempt("c@example.com", False, origin_ip="1.1.1.1", when=NOW)
        memory_store.record_login_attempt("a@example.com", True, origin_ip="3.3.3.3", when=NOW)

        assert memory_store.count_recent_failures("a@example.com", "1.1.1.1", since) == 2
        assert memory_store.count_recent_failures("a@example.com", "2.2.2.2", since) == 2
        assert memory_store.count_recent_failures("a@example.com", None, since) == 1
        assert memory_store.count_recent_failures("d@example.com", "9.9.9.9", since) == 0

    def test_empty_ip_matches_email_only(self, memory_store):
        since = NOW - timedelta(minutes=15)
        memory_store.record_login_attempt("a@example.com", False, origin_ip="", when=NOW)
        memory_store.record_login_attempt("b@example.com", False, origin_ip="", when=NOW)

        assert memory_store.count_recent_failures("a@example.com", "", since) == 1

    def test_unverified_login_not_counted(self, memory_store):
        since = NOW - timedelta(minutes=15)
        memory_store.record_login_attempt(
            "a@example.com", False, origin_ip="1.1.1.1", when=NOW,
            failure_reason=FailureReason.EMAIL_NOT_VERIFIED,
        )
        memory_store.record_login_attempt(
            "a@example.com", False, origin_ip="1.1.1.1", when=NOW,
            failure_reason=FailureReason.INVALID_PASSWORD,
        )

        assert memory_store.count_recent_failures("a@example.com", "1.1.1.1", since) == 1

    def test_old_failures_fall_out_of_window(self, memory_store):
        memory_store.record_login_attempt(
            "a@example.com", False, when=NOW - timedelta(minutes=20),
            failure_reason=FailureReason.INVALID_PASSWORD,
        )

        assert memory_store.count_recent_failures("a@example.com", None, NOW - timedelta(minutes=15)) == 0
        assert memory_store.prune_login_attempts(NOW) == 1


class TestPersistence:
    """State survives a restart from the same directory."""

    def test_reload_from_disk(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), token_encryption_key=REFRESH_SECRET)
        account = store.create_account("keep@example.com", "hash", first_name="Thabo")
        store.create_oauth_link(account.id, _google(refresh_token="1//refresh"))
        store.create_refresh_token(account.id, "tok", NOW + timedelta(days=7))
        store.create_artifact(
            "keep@example.com", ArtifactPurpose.EMAIL_VERIFICATION, ArtifactKind.CODE,
            "h", NOW + timedelta(minutes=10), now=NOW,
        )
        store.record_login_attempt(
            "keep@example.com", False, failure_reason=FailureReason.USER_NOT_FOUND, when=NOW
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), token_encryption_key=REFRESH_SECRET)

        assert reloaded.get_account(account.id).first_name == "Thabo"
        assert reloaded.get_oauth_link("google", "g-1").refresh_token == "1//refresh"
        assert reloaded.get_active_refresh_token("tok", NOW) is not None
        assert reloaded.find_active_artifact(
            "keep@example.com", ArtifactPurpose.EMAIL_VERIFICATION, NOW
        ).kind == ArtifactKind.CODE
        assert reloaded.login_attempts[0].failure_reason == FailureReason.USER_NOT_FOUND

    def test_requires_encryption_key(self, monkeypatch):
        monkeypatch.delenv("OAUTH_TOKEN_ENCRYPTION_KEY", raising=False)
        monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)

        with pytest.raises(RuntimeError):
            MemoryStore()
