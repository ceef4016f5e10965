from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from identity_engine.config import Settings, get_settings, reset_settings_cache
from identity_engine.logging import get_logger
from identity_engine.service.auth import IdentityEngine
from identity_engine.service.credentials import CredentialService
from identity_engine.service.email import EmailSender, SmtpEmailSender
from identity_engine.service.email_verification import EmailVerification
from identity_engine.service.maintenance import Maintenance
from identity_engine.service.oauth import FederatedIdentity
from identity_engine.service.password_reset import PasswordReset
from identity_engine.service.rate_limit import RateLimiter
from identity_engine.service.security_log import SecurityLog
from identity_engine.service.sessions import SessionRegistry
from identity_engine.service.tokens import TokenVault
from identity_engine.storage.memory import MemoryStore
from identity_engine.storage.postgres import PostgresStore
from identity_engine.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
    """Composition root: builds the store and wires every service to it.

    ``store``, ``sender`` and ``cache`` may be injected; otherwise they are
    derived from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        sender: Optional[EmailSender] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)
        self.store = store

        self.cache = cache
        if self.cache is None and self.settings.redis_url:
            try:
                candidate = RedisCache(self.settings.redis_url)
                candidate.verify_connection()
                self.cache = candidate
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits fall back to the store; concurrent workers may over-admit.",
                )

        self.sender: EmailSender = sender or SmtpEmailSender(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )

        self.security_log = SecurityLog(
            self.store, retention_days=self.settings.security_log_retention_days
        )
        self.rate_limiter = RateLimiter(
            self.store,
            cache=self.cache,
            security_log=self.security_log,
            overrides=self.settings.rate_limit_overrides,
            retention_hours=self.settings.rate_limit_retention_hours,
        )
        self.credentials = CredentialService(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
        )
        self.vault = TokenVault(self.store)
        self.sessions = SessionRegistry(self.store, self.settings)
        self.verification = EmailVerification(
            self.store,
            self.vault,
            self.sender,
            self.security_log,
            ttl_hours=self.settings.email_verification_ttl_hours,
            resend_cooldown_seconds=self.settings.email_verification_resend_cooldown_seconds,
        )
        self.password_reset = PasswordReset(
            self.store,
            self.vault,
            self.credentials,
            self.sessions,
            self.sender,
            self.security_log,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.federated = FederatedIdentity(
            self.store,
            self.sender,
            self.security_log,
            client_id=self.settings.oauth_google_client_id,
            tokeninfo_url=self.settings.oauth_google_tokeninfo_url,
            clock_skew_seconds=self.settings.oauth_clock_skew_seconds,
            pending_ttl_days=self.settings.pending_registration_ttl_days,
            pending_token_ttl_hours=self.settings.pending_registration_token_ttl_hours,
        )
        self.engine = IdentityEngine(
            self.store,
            self.settings,
            credentials=self.credentials,
            sessions=self.sessions,
            rate_limiter=self.rate_limiter,
            security_log=self.security_log,
            verification=self.verification,
            federated=self.federated,
            sender=self.sender,
        )
        self.maintenance = Maintenance(
            vault=self.vault,
            federated=self.federated,
            rate_limiter=self.rate_limiter,
            security_log=self.security_log,
            sessions=self.sessions,
        )
        logger.info("runtime_init_complete", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path once the runtime exists,
    and a locked re-check before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Keyword overrides (``store``, ``sender``, ``cache``) are passed to
    ``Runtime``.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime
