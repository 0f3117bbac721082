from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.email import EmailService
from warden.service.jobs import JobProcessor, JobScheduler
from warden.service.permissions import PermissionResolver
from warden.service.tokens import TokenIssuer
from warden.service.verification import (
    SEND_VERIFICATION_EMAIL,
    VerificationCodes,
    VerificationMailer,
)
from warden.storage.memory import MemoryStore
from warden.storage.memory_cache import InMemoryCache
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds the service graph for the FastAPI app.

    Collaborators are built in dependency order and handed to each other
    explicitly; ``close`` releases them in reverse.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(mfa_encryption_key=self.settings.mfa_key_material)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_key_material,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.tokens = TokenIssuer(self.settings)
        self.scheduler = JobScheduler(
            self.cache,
            lease_ms=self.settings.job_lease_ms,
            max_attempts=self.settings.job_max_attempts,
            retry_delay_ms=self.settings.job_retry_delay_ms,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            app_name=self.settings.app_name,
        )
        self.verification_codes = VerificationCodes(self.cache, self.settings)
        self.mailer = VerificationMailer(self.store, self.verification_codes, self.email)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            scheduler=self.scheduler,
            codes=self.verification_codes,
        )
        self.permissions = PermissionResolver(self.store, self.cache, self.settings)
        self.job_processor = JobProcessor(
            self.scheduler,
            {SEND_VERIFICATION_EMAIL: self.mailer},
            interval_ms=self.settings.job_poll_interval_ms,
            batch_size=self.settings.job_batch_size,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
            job_processor_enabled=self.settings.job_processor_enabled,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    dead_letter_max=self.settings.job_dead_letter_max,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
            raise RuntimeError(
                "Redis is required for login sessions, verification codes, permission "
                "caching and jobs; start Redis or set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true "
                "for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and jobs are "
                "process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return InMemoryCache(dead_letter_max=self.settings.job_dead_letter_max)

    async def close(self) -> None:
        await self.job_processor.stop()
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
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
                loop.create_task(previous.close())
            except RuntimeError:
                asyncio.run(previous.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
