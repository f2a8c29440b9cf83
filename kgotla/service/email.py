from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from kgotla.config import Settings
from kgotla.logging import get_logger
from kgotla.storage.models import ArtifactKind

logger = get_logger(__name__)

BRAND = "Kgotla"
TAGLINE = "Traditional meeting place for modern voices"

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #2d2a26; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #8b5a2b; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .code { font-size: 32px; font-weight: 700; letter-spacing: 6px; }
        .footer { margin-top: 40px; font-size: 12px; color: #6b645c; }
"""


class EmailSender(Protocol):
    """What the auth orchestrator needs from an email transport."""

    def send_email_verification(
        self, to_email: str, secret: str, kind: ArtifactKind = ArtifactKind.CODE
    ) -> bool: ...

    def send_password_reset(self, to_email: str, reset_url: str) -> bool: ...

    def send_welcome(self, to_email: str, first_name: Optional[str] = None) -> bool: ...


def _html(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{BRAND} - {TAGLINE}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification codes and verification links
    - Password reset links
    - Welcome emails
    - Fallback to logging when SMTP is not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = BRAND,
        base_url: Optional[str] = None,
        code_ttl_label: str = "10 minutes",
        link_ttl_label: str = "24 hours",
        reset_ttl_label: str = "1 hour",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.code_ttl_label = code_ttl_label
        self.link_ttl_label = link_ttl_label
        self.reset_ttl_label = reset_ttl_label

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            code_ttl_label=_ttl_label(settings.verification_code_ttl),
            link_ttl_label=_ttl_label(settings.verification_link_ttl),
            reset_ttl_label=_ttl_label(settings.password_reset_ttl),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; True on success, False on any delivery failure."""
        if not self.is_configured:
            # Dev mode: the message body carries secrets, so only the subject is logged
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connection_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def verification_url(self, token: str) -> str:
        return f"{self.base_url}/verify-email?token={token}"

    def send_email_verification(
        self, to_email: str, secret: str, kind: ArtifactKind = ArtifactKind.CODE
    ) -> bool:
        """Send either a 6-digit code or a verification link."""
        subject = f"Verify your {BRAND} account"
        if kind == ArtifactKind.CODE:
            html_body = _html(
                "Verify your email",
                f"""<p>Welcome to {BRAND}! Enter this code to verify your email address:</p>
        <p class="code">{secret}</p>
        <p>This code will expire in {self.code_ttl_label}.</p>""",
            )
            text_body = f"""Verify your {BRAND} account

Welcome to {BRAND}! Enter this code to verify your email address:

{secret}

This code will expire in {self.code_ttl_label}.

---
{BRAND} - {TAGLINE}
"""
        else:
            verify_url = self.verification_url(secret)
            html_body = _html(
                "Verify your email",
                f"""<p>Welcome to {BRAND}! Please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;"><a href="{verify_url}" class="button">Verify Email</a></p>
        <p>This link will expire in {self.link_ttl_label}.</p>
        <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>""",
            )
            text_body = f"""Verify your {BRAND} account

Welcome to {BRAND}! Please verify your email address by visiting the link below:

{verify_url}

This link will expire in {self.link_ttl_label}.

---
{BRAND} - {TAGLINE}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, reset_url: str) -> bool:
        subject = f"Reset your {BRAND} password"
        html_body = _html(
            "Reset your password",
            f"""<p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in {self.reset_ttl_label}.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>""",
        )
        text_body = f"""Reset your {BRAND} password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_label}.

If you didn't request this, you can safely ignore this email.

---
{BRAND} - {TAGLINE}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, first_name: Optional[str] = None) -> bool:
        greeting = f"Welcome, {first_name}!" if first_name else f"Welcome to {BRAND}!"
        subject = f"Welcome to {BRAND}"
        html_body = _html(
            html.escape(greeting),
            f"""<p>Your account is ready. Join the conversation, share your voice and meet your community.</p>
        <p style="margin: 30px 0;"><a href="{self.base_url}" class="button">Open {BRAND}</a></p>""",
        )
        text_body = f"""{greeting}

Your account is ready. Join the conversation, share your voice and meet your community:

{self.base_url}

---
{BRAND} - {TAGLINE}
"""
        return self._send_email(to_email, subject, html_body, text_body)


def _ttl_label(spec: str) -> str:
    """Render a duration string such as ``10m`` as ``10 minutes``."""
    units = {"m": "minute", "h": "hour", "d": "day"}
    amount, unit = spec[:-1], units.get(spec[-1:], "")
    if not unit or not amount.isdigit():
        return spec
    return f"{int(amount)} {unit}{'' if int(amount) == 1 else 's'}"
