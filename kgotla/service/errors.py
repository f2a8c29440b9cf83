from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` the HTTP layer can serialize without inspecting messages:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        payload = {"error": self.error_code, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Auth taxonomy


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "An account with this email already exists") -> None:
        super().__init__(message, detail={"field": "email"})


class WeakPasswordError(ValidationError):
    """Password failed the strength policy; carries every violated rule."""

    error_code = "weak_password"

    def __init__(self, violations: List[str]) -> None:
        super().__init__(
            "Password does not meet the strength requirements",
            detail={"violations": list(violations)},
        )
        self.violations = list(violations)


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; the two are indistinguishable to callers.

    ``failure_reason`` is for the audit log only and never serialized.
    """

    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str = "Invalid email or password",
        *,
        failure_reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.failure_reason = failure_reason


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(self, message: str = "Please verify your email before signing in") -> None:
        super().__init__(message)


class TooManyAttemptsError(RateLimitedError):
    error_code = "too_many_attempts"

    def __init__(
        self,
        message: str = "Too many login attempts, please try again later",
        *,
        retry_after_seconds: Optional[int] = None,
    ) -> None:
        detail = {"retry_after_seconds": retry_after_seconds} if retry_after_seconds else None
        super().__init__(message, detail=detail)
        self.retry_after_seconds = retry_after_seconds


class InvalidOrExpiredTokenError(AuthenticationError):
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class InvalidOrExpiredCodeError(InvalidOrExpiredTokenError):
    error_code = "invalid_or_expired_code"

    def __init__(self, message: str = "Invalid or expired verification code") -> None:
        super().__init__(message)


class TokenMalformedError(AuthenticationError):
    error_code = "token_malformed"

    def __init__(self, message: str = "Token is malformed or has an invalid signature") -> None:
        super().__init__(message)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired") -> None:
        super().__init__(message)


class WrongTokenTypeError(AuthenticationError):
    error_code = "wrong_token_type"

    def __init__(self, message: str = "Token type is not valid for this operation") -> None:
        super().__init__(message)


class AccountNotFoundError(NotFoundError):
    error_code = "account_not_found"

    def __init__(self, message: str = "Account not found") -> None:
        super().__init__(message)


class InvalidDurationFormatError(ValidationError):
    error_code = "invalid_duration_format"


class InputTooLongError(ValidationError):
    error_code = "input_too_long"


class InternalError(ServerError):
    """Unexpected failure; details are logged server-side, never returned."""

    def __init__(self, message: str = "internal error") -> None:
        super().__init__(message)


class EmailDeliveryError(ServerError):
    error_code = "email_delivery_failed"

    def __init__(self, message: str = "Failed to send email") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DuplicateEmailError",
    "WeakPasswordError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "TooManyAttemptsError",
    "InvalidOrExpiredTokenError",
    "InvalidOrExpiredCodeError",
    "TokenMalformedError",
    "TokenExpiredError",
    "WrongTokenTypeError",
    "AccountNotFoundError",
    "InvalidDurationFormatError",
    "InputTooLongError",
    "InternalError",
    "EmailDeliveryError",
]
