from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from kgotla.logging import get_logger
from kgotla.storage.common import hash_secret
from kgotla.storage.models import RefreshTokenRecord

logger = get_logger(__name__)


class LedgerStore(Protocol):
    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        origin_ip: Optional[str] = None,
        device_info: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> RefreshTokenRecord: ...

    def get_active_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token_if_active(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
        now: datetime,
        *,
        origin_ip: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int: ...

    def prune_refresh_tokens(self, older_than: datetime) -> int: ...


class SessionLedger:
    """Server-side record of issued refresh tokens.

    Callers pass raw token values; only their SHA-256 digests reach the
    store. ``find_active`` returns None for unknown, revoked and expired
    tokens alike.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(
        self,
        account_id: str,
        token_value: str,
        expires_at: datetime,
        origin_ip: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> RefreshTokenRecord:
        record = self.store.create_refresh_token(
            account_id,
            hash_secret(token_value),
            expires_at,
            origin_ip=origin_ip,
            device_info=device_info,
            issued_at=self._clock(),
        )
        logger.debug("refresh_token_issued", account_id=account_id, record_id=record.id)
        return record

    def find_active(self, token_value: str) -> Optional[RefreshTokenRecord]:
        return self.store.get_active_refresh_token(hash_secret(token_value), self._clock())

    def revoke(self, token_value: str) -> bool:
        """Revoke one token; already revoked or unknown tokens are not an error."""
        record = self.store.revoke_refresh_token_if_active(
            hash_secret(token_value), self._clock()
        )
        if record:
            logger.info("refresh_token_revoked", account_id=record.account_id, record_id=record.id)
        return record is not None

    def revoke_all(self, account_id: str) -> int:
        count = self.store.revoke_account_refresh_tokens(account_id, self._clock())
        logger.info("refresh_tokens_revoked_all", account_id=account_id, count=count)
        return count

    def rotate(
        self,
        old_token_value: str,
        new_token_value: str,
        new_expires_at: datetime,
        *,
        origin_ip: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> Optional[RefreshTokenRecord]:
        """Atomically retire ``old_token_value`` and record its successor.

        None means the old token was no longer active (already rotated,
        revoked or expired) and nothing was written.
        """
        record = self.store.rotate_refresh_token(
            hash_secret(old_token_value),
            hash_secret(new_token_value),
            new_expires_at,
            self._clock(),
            origin_ip=origin_ip,
            device_info=device_info,
        )
        if record:
            logger.info("refresh_token_rotated", account_id=record.account_id, record_id=record.id)
        return record

    def prune(self, older_than: datetime) -> int:
        removed = self.store.prune_refresh_tokens(older_than)
        if removed:
            logger.info("refresh_tokens_pruned", removed=removed)
        return removed
