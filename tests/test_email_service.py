"""Tests for the SMTP email service."""

import smtplib

import pytest

from conftest import make_settings
from kgotla.service import email as email_module
from kgotla.service.email import EmailService, _ttl_label
from kgotla.storage.models import ArtifactKind


class FakeSMTP:
    """Stands in for smtplib.SMTP and records what was sent."""

    instances: list["FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _configured(**overrides) -> EmailService:
    values = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@kgotla.example",
        base_url="https://kgotla.example/",
    )
    values.update(overrides)
    return EmailService(**values)


class TestDevMode:
    """Without SMTP settings every send succeeds without a network call."""

    def test_unconfigured_service_reports_success(self, fake_smtp):
        service = EmailService()

        assert service.is_configured is False
        assert service.send_email_verification("user@example.com", "123456") is True
        assert service.send_password_reset("user@example.com", "http://x/reset") is True
        assert fake_smtp.instances == []


class TestDelivery:
    def test_starttls_login_and_send(self, fake_smtp):
        service = _configured()

        assert service.send_email_verification("user@example.com", "482913") is True

        server = fake_smtp.instances[0]
        assert (server.host, server.port) == ("smtp.example.com", 587)
        assert server.started_tls is True
        assert server.logged_in == ("mailer", "secret")
        from_addr, to_addr, message = server.sent[0]
        assert from_addr == "noreply@kgotla.example"
        assert to_addr == "user@example.com"
        assert "482913" in message

    def test_implicit_tls_skips_starttls(self, fake_smtp):
        service = _configured(smtp_use_tls=False, smtp_port=465)

        assert service.send_welcome("user@example.com", "Thandi") is True
        assert fake_smtp.instances[0].started_tls is False

    def test_welcome_name_escaped_in_html(self, fake_smtp):
        _configured().send_welcome("user@example.com", "<b>Thandi</b>")

        message = fake_smtp.instances[0].sent[0][2]
        assert "<h1>Welcome, &lt;b&gt;Thandi&lt;/b&gt;!</h1>" in message
        assert "<h1>Welcome, <b>" not in message

    def test_link_verification_uses_base_url(self, fake_smtp):
        service = _configured()

        service.send_email_verification("user@example.com", "tok-abc", ArtifactKind.LINK)

        message = fake_smtp.instances[0].sent[0][2]
        assert "https://kgotla.example/verify-email?token=tok-abc" in message

    @pytest.mark.parametrize(
        "error",
        [
            smtplib.SMTPAuthenticationError(535, b"bad credentials"),
            smtplib.SMTPRecipientsRefused({"user@example.com": (550, b"no such user")}),
            smtplib.SMTPException("server hung up"),
            ConnectionRefusedError("refused"),
        ],
    )
    def test_delivery_failures_return_false(self, fake_smtp, error):
        fake_smtp.fail_with = error

        assert _configured().send_password_reset("user@example.com", "https://x/r") is False


class TestFormatting:
    def test_verification_url_strips_trailing_slash(self):
        assert _configured().verification_url("abc") == "https://kgotla.example/verify-email?token=abc"

    def test_email_redaction(self):
        service = EmailService()

        assert service._redact_email("thandi@example.com") == "th***@example.com"
        assert service._redact_email("nonsense") == "redacted"

    @pytest.mark.parametrize(
        "spec,label",
        [("10m", "10 minutes"), ("1h", "1 hour"), ("24h", "24 hours"), ("7d", "7 days"), ("odd", "odd")],
    )
    def test_ttl_label(self, spec, label):
        assert _ttl_label(spec) == label

    def test_from_settings(self):
        settings = make_settings(
            smtp_host="smtp.example.com",
            email_from_address="noreply@kgotla.example",
            verification_code_ttl="5m",
        )

        service = EmailService.from_settings(settings)

        assert service.is_configured is True
        assert service.code_ttl_label == "5 minutes"
        assert service.reset_ttl_label == "1 hour"
