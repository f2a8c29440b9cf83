from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from kgotla.config import Settings
from kgotla.durations import DurationFormatError, expiry_from_duration, parse_duration
from kgotla.logging import get_logger
from kgotla.service.errors import (
    InvalidDurationFormatError,
    TokenExpiredError,
    TokenMalformedError,
    WrongTokenTypeError,
)
from kgotla.service.schemas import AccessClaims, RefreshClaims
from kgotla.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    value: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """HS256 JWT issuance and verification plus opaque secret generation.

    Access and refresh tokens are signed with distinct secrets, so a leaked
    access secret cannot mint refresh tokens.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._keys = {
            ACCESS: settings.jwt_access_secret.encode("utf-8"),
            REFRESH: settings.jwt_refresh_secret.encode("utf-8"),
        }
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leeway = timedelta(seconds=settings.token_leeway_seconds)

    def _now(self) -> datetime:
        return self._clock()

    # encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._keys[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _issue(
        self, account: Account, token_type: str, lifetime: timedelta, extra: dict[str, Any]
    ) -> IssuedToken:
        now = self._now()
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + lifetime
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "email": account.email,
            "token_type": token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            # Unique per token so two refresh tokens minted in one second differ
            "jti": jti,
            **extra,
        }
        return IssuedToken(
            value=self._encode_jwt(payload, token_type),
            jti=jti,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def issue_access(self, account: Account) -> IssuedToken:
        return self._issue(
            account,
            ACCESS,
            parse_duration(self.settings.access_token_ttl),
            {
                "is_verified": account.email_verified,
                "subscription_tier": account.subscription_tier,
            },
        )

    def issue_refresh(self, account: Account, *, remember_me: bool = False) -> IssuedToken:
        ttl = (
            self.settings.refresh_token_remember_ttl
            if remember_me
            else self.settings.refresh_token_ttl
        )
        return self._issue(account, REFRESH, parse_duration(ttl), {})

    # verification
    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        if not isinstance(token, str) or not token or not token.isascii():
            raise TokenMalformedError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError()

        # Only HS256 is accepted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformedError()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenMalformedError()

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input, expected_type), sig_b64):
            other = REFRESH if expected_type == ACCESS else ACCESS
            if hmac.compare_digest(self._sign(signing_input, other), sig_b64):
                raise WrongTokenTypeError()
            raise TokenMalformedError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError()
        if not isinstance(payload, dict):
            raise TokenMalformedError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenMalformedError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenMalformedError()

        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise TokenMalformedError()
        if self._now() - self._leeway >= datetime.fromtimestamp(exp_ts, tz=timezone.utc):
            raise TokenExpiredError()

        if payload.get("token_type") != expected_type:
            raise WrongTokenTypeError()
        if isinstance(aud, list):
            payload["aud"] = self.settings.jwt_audience
        return payload

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, ACCESS)
        try:
            return AccessClaims.model_validate(payload)
        except ValueError:
            raise TokenMalformedError()

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, REFRESH)
        try:
            return RefreshClaims.model_validate(payload)
        except ValueError:
            raise TokenMalformedError()

    # opaque secrets
    @staticmethod
    def new_opaque_secret() -> str:
        """256 random bits, hex encoded; used for verification links and reset tokens."""
        return secrets.token_hex(32)

    @staticmethod
    def new_verification_code() -> str:
        return str(secrets.randbelow(900000) + 100000)

    def expiry_from_duration(self, spec: str) -> datetime:
        try:
            return expiry_from_duration(spec, now=self._now())
        except DurationFormatError as exc:
            raise InvalidDurationFormatError(str(exc), detail={"value": spec}) from exc

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
