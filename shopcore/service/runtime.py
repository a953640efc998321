from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from shopcore.config import Settings, get_settings, reset_settings_cache
from shopcore.logging import get_logger
from shopcore.service.challenges import ChallengeStore, derive_otp_key
from shopcore.service.gate import AccessGate
from shopcore.service.ledger import LedgerService
from shopcore.service.messaging import HttpOtpSender, LogOtpSender, OtpSender, SessionNotifier
from shopcore.service.rate_limit import RateLimiter
from shopcore.service.revocation import RevocationRegistry
from shopcore.service.session import SessionManager
from shopcore.service.tokens import TokenCodec
from shopcore.storage.memory import MemoryStore
from shopcore.storage.postgres import PostgresStore
from shopcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds every collaborator once and wires them together."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    connect_timeout=self.settings.database_connect_timeout,
                    statement_timeout_ms=int(self.settings.upstream_timeout_seconds * 1000),
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.upstream_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for OTP challenges, rate limits and token revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; challenges, rate limits and "
                    "revocations are held in this process only."
                ),
                mode=fallback_mode,
            )

        settings = self.settings
        self.codec = TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway_seconds=settings.token_leeway_seconds,
        )
        self.revocation = RevocationRegistry(
            self.codec,
            self.cache,
            fail_open=settings.revocation_fail_open,
            timeout_seconds=settings.upstream_timeout_seconds,
        )
        self.challenges = ChallengeStore(
            derive_otp_key(settings.jwt_secret),
            self.cache,
            ttl_seconds=settings.otp_ttl_seconds,
            cooldown_seconds=settings.otp_cooldown_seconds,
            max_attempts=settings.otp_max_attempts,
        )
        self.rate_limiter = RateLimiter(self.cache)
        self.sender = self._build_sender(settings)
        self.notifier = SessionNotifier(
            settings.partner_sync_url,
            settings.partner_api_key,
            timeout=settings.upstream_timeout_seconds,
        )
        self.sessions = SessionManager(
            self.store,
            self.challenges,
            self.codec,
            self.revocation,
            self.rate_limiter,
            self.sender,
            self.notifier,
            default_modules=settings.default_modules,
            rate_limit_count=settings.otp_rate_limit_count,
            rate_limit_window_seconds=settings.otp_rate_limit_window_seconds,
            retry_attempts=settings.upstream_retry_attempts,
        )
        self.ledger = LedgerService(
            self.store,
            self.store,
            cas_retries=settings.ledger_cas_retries,
            retry_attempts=settings.upstream_retry_attempts,
        )
        self.gate = AccessGate(
            self.codec,
            self.revocation,
            self.store,
            required_module=settings.required_module,
            retry_attempts=settings.upstream_retry_attempts,
        )

        logger.info(
            "runtime_initialized",
            store_type="memory" if settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            sms_configured=isinstance(self.sender, HttpOtpSender),
            partner_sync_enabled=self.notifier.enabled,
            revocation_fail_open=settings.revocation_fail_open,
        )

    @staticmethod
    def _build_sender(settings: Settings) -> OtpSender:
        if settings.sms_provider_url and settings.sms_auth_key:
            return HttpOtpSender(
                settings.sms_provider_url,
                settings.sms_auth_key,
                template_id=settings.sms_template_id,
                timeout=settings.upstream_timeout_seconds,
            )
        return LogOtpSender()

    async def close(self) -> None:
        await self.notifier.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
