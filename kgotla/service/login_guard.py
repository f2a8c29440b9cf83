from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from kgotla.logging import email_fingerprint, get_logger
from kgotla.service.errors import TooManyAttemptsError
from kgotla.storage.models import FailureReason, LoginAttempt

logger = get_logger(__name__)

DEFAULT_WINDOW = timedelta(minutes=15)
DEFAULT_THRESHOLD = 5
DEFAULT_RETENTION = timedelta(days=30)


class AttemptStore(Protocol):
    def record_login_attempt(
        self,
        email: str,
        success: bool,
        *,
        origin_ip: Optional[str] = None,
        failure_reason: Optional[FailureReason] = None,
        user_agent: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> LoginAttempt: ...

    def count_recent_failures(
        self, email: str, origin_ip: Optional[str], since: datetime
    ) -> int: ...

    def prune_login_attempts(self, older_than: datetime) -> int: ...


class LoginAttemptGuard:
    """Rolling-window lockout over the login-attempt audit log.

    Failures are counted per email OR per origin IP, so spraying one address
    from many IPs and many addresses from one IP both trip the threshold.
    """

    def __init__(
        self,
        store: AttemptStore,
        *,
        window: timedelta = DEFAULT_WINDOW,
        threshold: int = DEFAULT_THRESHOLD,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.window = window
        self.threshold = threshold
        self.retention = retention
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        email: str,
        origin_ip: Optional[str],
        success: bool,
        reason: Optional[FailureReason] = None,
        *,
        user_agent: Optional[str] = None,
    ) -> LoginAttempt:
        return self.store.record_login_attempt(
            email,
            success,
            origin_ip=origin_ip,
            failure_reason=None if success else reason,
            user_agent=user_agent,
            when=self._clock(),
        )

    def recent_failure_count(
        self,
        email: str,
        origin_ip: Optional[str],
        window: Optional[timedelta] = None,
    ) -> int:
        since = self._clock() - (window or self.window)
        return self.store.count_recent_failures(email, origin_ip, since)

    def check(
        self,
        email: str,
        origin_ip: Optional[str],
        *,
        user_agent: Optional[str] = None,
    ) -> None:
        """Raise TooManyAttemptsError once the window holds ``threshold`` failures.

        The rejected attempt is itself recorded as ``rate_limited``.
        """
        failures = self.recent_failure_count(email, origin_ip)
        if failures < self.threshold:
            return
        self.record(
            email,
            origin_ip,
            False,
            FailureReason.RATE_LIMITED,
            user_agent=user_agent,
        )
        logger.warning(
            "login_rate_limited",
            email_hash=email_fingerprint(email),
            origin_ip=origin_ip,
            failures=failures,
        )
        raise TooManyAttemptsError(retry_after_seconds=int(self.window.total_seconds()))

    def prune(self, older_than: Optional[datetime] = None) -> int:
        cutoff = older_than or (self._clock() - self.retention)
        removed = self.store.prune_login_attempts(cutoff)
        if removed:
            logger.info("login_attempts_pruned", removed=removed)
        return removed
