from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from kgotla.config import get_settings, reset_settings_cache
from kgotla.logging import get_logger
from kgotla.service.auth import AuthService
from kgotla.service.email import EmailService
from kgotla.storage.memory import MemoryStore
from kgotla.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``.

    Example: postgresql://kgotla:hunter2@db:5432/kgotla -> postgresql://kgotla:***@db:5432/kgotla
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide store and auth services."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        encryption_key = (
            self.settings.oauth_token_encryption_key or self.settings.jwt_refresh_secret
        )
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.state_root,
                    token_encryption_key=encryption_key,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    token_encryption_key=encryption_key,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(self.store, self.settings, self.email)
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.use_memory_store:
            raise RuntimeError("runtime reset is only allowed with USE_MEMORY_STORE=true")
        runtime = Runtime()
        return runtime
