from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from adminguard.config import IdentityProviderMode, Settings, get_settings, reset_settings_cache
from adminguard.logging import get_logger
from adminguard.service.audit import AuditLogger, AuditSink, JsonlAuditSink, MemoryAuditSink
from adminguard.service.auth import (
    AuthVerifier,
    IdentityProvider,
    RemoteIdentityProvider,
    SignedTokenProvider,
)
from adminguard.service.gateway import Gateway
from adminguard.service.rate_limit import FixedWindowRateLimiter, LimitClass
from adminguard.storage.memory import MemoryStore
from adminguard.storage.redis_cache import RedisRateLimiter

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


def _build_provider(settings: Settings) -> IdentityProvider:
    if settings.identity_provider == IdentityProviderMode.REMOTE:
        if not settings.identity_verify_url:
            raise RuntimeError("IDENTITY_VERIFY_URL is required when IDENTITY_PROVIDER=remote")
        return RemoteIdentityProvider(
            settings.identity_verify_url,
            timeout=settings.identity_timeout_seconds,
            retries=settings.identity_retries,
        )
    return SignedTokenProvider(
        settings.token_secret,
        issuer=settings.token_issuer,
        audience=settings.token_audience,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            identity_provider=self.settings.identity_provider.value,
        )

        self.store = MemoryStore()
        self._seed_subjects()

        self.limiter: Union[RedisRateLimiter, FixedWindowRateLimiter]
        self.limiter = self._build_limiter()

        self.provider = _build_provider(self.settings)
        self.verifier = AuthVerifier(
            self.provider,
            self.store,
            token_max_length=self.settings.token_max_length,
            store_read_retries=self.settings.store_read_retries,
        )

        self.audit_sink: AuditSink = self._build_audit_sink()
        self.audit = AuditLogger(self.audit_sink)

        self.gateway = Gateway(
            store=self.store,
            verifier=self.verifier,
            limiter=self.limiter,
            audit=self.audit,
            rate_limits={
                LimitClass.GENERAL: (
                    self.settings.general_rate_limit,
                    self.settings.general_rate_window_seconds,
                ),
                LimitClass.ADMIN: (
                    self.settings.admin_rate_limit,
                    self.settings.admin_rate_window_seconds,
                ),
            },
            store_read_retries=self.settings.store_read_retries,
            expose_field_errors=self.settings.expose_field_errors,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.limiter, RedisRateLimiter),
            audit_sink=type(self.audit_sink).__name__,
            seeded_users=len(self.store.users),
        )

    def _seed_subjects(self) -> None:
        for subject in self.settings.seed_admin_subjects:
            if self.store.get_user(subject) is None:
                self.store.create_user(subject, is_admin=True)
        for subject in self.settings.seed_user_subjects:
            if self.store.get_user(subject) is None:
                self.store.create_user(subject, is_admin=False)

    def _build_audit_sink(self) -> AuditSink:
        if self.settings.audit_log_path:
            return JsonlAuditSink(self.settings.audit_log_path)
        if not self.settings.test_mode:
            raise RuntimeError(
                "AUDIT_LOG_PATH is required outside TEST_MODE; "
                "audit records must be written to a durable append-only log."
            )
        logger.warning(
            "audit_sink_memory_fallback",
            message="AUDIT_LOG_PATH not set under TEST_MODE; audit records are kept in memory only.",
        )
        return MemoryAuditSink()

    def _build_limiter(self) -> Union[RedisRateLimiter, FixedWindowRateLimiter]:
        local = FixedWindowRateLimiter(
            stale_after_windows=self.settings.rate_limit_stale_windows,
            max_keys=self.settings.rate_limit_max_keys,
        )
        if not self.settings.redis_url:
            return local

        try:
            limiter = RedisRateLimiter(self.settings.redis_url)
            limiter.verify_connection()
            return limiter
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is configured for shared rate limits but unreachable; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=f"Running without Redis under {fallback_mode}; rate limits are per-process only.",
            mode=fallback_mode,
        )
        return local

    async def close(self) -> None:
        await self.gateway.drain()
        await self.provider.close()
        if isinstance(self.limiter, RedisRateLimiter):
            await self.limiter.close()


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
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.limiter, RedisRateLimiter):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.limiter.close())
            except RuntimeError:
                asyncio.run(runtime.limiter.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
