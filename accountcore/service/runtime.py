from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from accountcore.config import get_settings, reset_settings_cache
from accountcore.logging import get_logger
from accountcore.service.email import EmailService
from accountcore.service.hashing import SecretHasher
from accountcore.service.lifecycle import LifecycleEngine
from accountcore.service.tokens import AccessTokenSigner
from accountcore.storage.memory import MemoryDirectory
from accountcore.storage.postgres import PostgresDirectory

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the singleton services behind the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            store_type=store_type,
        )

        try:
            self.directory = (
                MemoryDirectory(state_path=self.settings.state_path)
                if self.settings.use_memory_store
                else PostgresDirectory(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=None if self.settings.use_memory_store else _mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = SecretHasher.from_settings(self.settings)
        self.signer = AccessTokenSigner.from_settings(self.settings)
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_not_configured", mode="dev_log_only")
        self.engine = LifecycleEngine(
            self.directory,
            self.hasher,
            self.signer,
            self.email,
            self.settings,
        )
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.directory, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment for isolated tests."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
