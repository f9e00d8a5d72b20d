from __future__ import annotations

import asyncio
import contextlib
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adminguard.api.error_handling import register_exception_handlers
from adminguard.api.routes import router
from adminguard.config import Settings
from adminguard.logging import get_logger, set_correlation_id
from adminguard.service.audit import JsonlAuditSink
from adminguard.storage.redis_cache import RedisRateLimiter

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

_sweep_task: asyncio.Task | None = None


async def _run_rate_limit_sweeper(limiter: Any, interval_seconds: int) -> None:
    """Background loop evicting idle rate-limit windows."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                limiter.purge_stale()
            except Exception as exc:
                logger.warning("rate_limit_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("rate_limit_sweeper_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the rate-limit sweeper; drain in-flight dispatches on shutdown."""
    global _sweep_task
    from adminguard.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_rate_limit_sweeper(
            runtime.limiter, runtime.settings.rate_limit_sweep_interval_seconds
        )
    )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="adminguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return list(_settings.cors_allow_origins)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id to the request and echo it as X-Request-ID.

    A client-supplied id is reused when it is short and made of safe
    characters; otherwise a new UUID is generated. The same id becomes the
    audit record's request_id.
    """
    client_request_id = request.headers.get("X-Request-ID")
    if client_request_id and not _REQUEST_ID_PATTERN.match(client_request_id):
        client_request_id = None
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, rate limiter and audit sink status plus build info."""
    from adminguard.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {"status": "healthy" if store_ok else "unhealthy"}

    if isinstance(runtime.limiter, RedisRateLimiter):
        limiter_ok = await _run_bounded("redis", runtime.limiter.verify_connection)
        checks["rate_limiter"] = {"status": "healthy" if limiter_ok else "unhealthy", "type": "redis"}
    else:
        limiter_ok = True
        checks["rate_limiter"] = {"status": "healthy", "type": "memory", "keys": len(runtime.limiter)}

    sink_type = "jsonl" if isinstance(runtime.audit_sink, JsonlAuditSink) else "memory"
    checks["audit"] = {
        "status": "degraded" if runtime.audit.sink_failures else "healthy",
        "type": sink_type,
        "sink_failures": runtime.audit.sink_failures,
    }

    return {
        "status": "healthy" if store_ok and limiter_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
