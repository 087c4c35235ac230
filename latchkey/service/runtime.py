from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from latchkey.config import get_settings, reset_settings_cache
from latchkey.logging import get_logger
from latchkey.service.auth import AuthService, AuthStore
from latchkey.service.email import EmailService
from latchkey.service.gate import AuthenticationGate
from latchkey.service.passwords import Argon2PasswordHasher
from latchkey.service.tokens import TokenLifecycle
from latchkey.storage.memory import MemoryStore
from latchkey.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: AuthStore = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
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
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = Argon2PasswordHasher()
        self.email = EmailService(self.settings)
        if not self.email.is_configured:
            logger.warning("email_not_configured", message="emails will be logged, not sent")
        self.tokens = TokenLifecycle(self.store, length=self.settings.token_length)
        self.gate = AuthenticationGate(self.store)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.hasher,
            self.email,
            self.settings,
        )

    async def aclose(self) -> None:
        await self.email.aclose()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            previous = runtime
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.aclose())
            else:
                loop.create_task(previous.aclose())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
