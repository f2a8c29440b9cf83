"""Tests for Google OAuth sign-in and account linking."""

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import STRONG_PASSWORD
from kgotla.service.errors import ValidationError
from kgotla.service.schemas import OAuthProfile


def _profile(**overrides) -> OAuthProfile:
    values = dict(
        provider_user_id="google-123",
        email="Thandi@Example.com",
        first_name="Thandi",
        last_name="Mokoena",
        avatar_url="https://lh3.googleusercontent.com/a/photo",
        access_token="ya29.first",
        refresh_token="1//first",
        token_expires_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        scope="openid email profile",
    )
    values.update(overrides)
    return OAuthProfile(**values)


class TestOAuthProfile:
    """Profile normalization."""

    def test_email_and_provider_normalized(self):
        profile = _profile(provider=" Google ")

        assert profile.provider == "google"
        assert profile.email == "thandi@example.com"

    def test_invalid_email_rejected(self):
        with pytest.raises(ValueError):
            _profile(email="not-an-address")


class TestAuthenticateWithOAuth:
    """Link lookup, link-by-email and new-account branches."""

    async def test_new_identity_creates_verified_oauth_only_account(self, auth_service, memory_store):
        result = await auth_service.authenticate_with_oauth(_profile(), origin_ip="10.0.0.2")

        assert result.account.email == "thandi@example.com"
        assert result.account.email_verified is True
        assert result.account.has_password is False
        assert result.account.profile_image_url.startswith("https://")
        assert result.access_token
        assert len(memory_store.refresh_tokens) == 1
        link = memory_store.get_oauth_link("google", "google-123")
        assert link.account_id == result.account.id
        assert link.access_token == "ya29.first"

    async def test_existing_password_account_is_linked_not_duplicated(
        self, auth_service, memory_store
    ):
        registered = await auth_service.register("thandi@example.com", STRONG_PASSWORD)

        result = await auth_service.authenticate_with_oauth(_profile())

        assert result.account.id == registered.account.id
        assert result.account.email_verified is True
        assert result.account.has_password is True
        assert len(memory_store.accounts) == 1
        assert memory_store.get_oauth_link("google", "google-123").account_id == registered.account.id

    async def test_repeat_login_updates_provider_tokens(self, auth_service, memory_store):
        first = await auth_service.authenticate_with_oauth(_profile())

        second = await auth_service.authenticate_with_oauth(
            _profile(access_token="ya29.second", refresh_token=None, email="changed@example.com")
        )

        assert second.account.id == first.account.id
        link = memory_store.get_oauth_link("google", "google-123")
        assert link.access_token == "ya29.second"
        assert link.refresh_token == "1//first"
        assert len(memory_store.accounts) == 1

    async def test_profile_without_email_rejected_for_new_identity(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.authenticate_with_oauth(_profile(email=None))

    async def test_profile_without_email_ok_for_known_identity(self, auth_service):
        first = await auth_service.authenticate_with_oauth(_profile())

        again = await auth_service.authenticate_with_oauth(_profile(email=None))
        assert again.account.id == first.account.id

    async def test_unsupported_provider(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.authenticate_with_oauth(_profile(provider="github"))

    async def test_oauth_session_is_refreshable(self, auth_service):
        result = await auth_service.authenticate_with_oauth(_profile(), remember_me=True)

        renewed = await auth_service.refresh(result.refresh_token)
        assert renewed.access_token

    async def test_concurrent_first_logins_share_one_account(self, auth_service, memory_store):
        results = await asyncio.gather(
            *(auth_service.authenticate_with_oauth(_profile()) for _ in range(3))
        )

        assert len({r.account.id for r in results}) == 1
        assert len(memory_store.accounts) == 1
        assert len(memory_store.oauth_links) == 1

    async def test_password_login_still_works_after_linking(self, auth_service, email_sender):
        await auth_service.register("thandi@example.com", STRONG_PASSWORD)
        await auth_service.authenticate_with_oauth(_profile())

        result = await auth_service.login("thandi@example.com", STRONG_PASSWORD)
        assert result.account.email_verified is True
