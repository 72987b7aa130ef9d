"""
Rate limiting and the shared Redis connection.

Billing endpoints are limited per tenant with slowapi. Renewal creates
gateway orders, so it gets the tightest limit; verification is looser so
a client retrying a callback after a timeout is not locked out.

The same module owns the redis.asyncio client used by the lock store,
the alert counters and the health check.
"""

import asyncio
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis, from_url
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.shared.core.config import get_settings

logger = structlog.get_logger()

TENANT_HEADER = "X-Tenant-ID"

_limiter: Optional[Limiter] = None
_redis_client: Optional[Redis] = None
_redis_loop: Optional[asyncio.AbstractEventLoop] = None


def tenant_key(request: Request) -> str:
    """Limit by tenant when the request carries one, else by client address."""
    tenant_id = request.headers.get(TENANT_HEADER)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return f"ip:{get_remote_address(request)}"


def get_limiter() -> Limiter:
    global _limiter
    if _limiter is None:
        settings = get_settings()
        _limiter = Limiter(
            key_func=tenant_key,
            storage_uri=settings.REDIS_URL or "memory://",
            strategy="moving-window",
            enabled=settings.RATELIMIT_ENABLED,
        )
    return _limiter


def get_redis_client() -> Optional[Redis]:
    """
    Shared Redis client, or None without REDIS_URL.

    Celery jobs each run in a fresh event loop, so the client is rebuilt
    when the running loop changes.
    """
    global _redis_client, _redis_loop
    settings = get_settings()
    if not settings.REDIS_URL:
        return None

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if _redis_client is None or _redis_loop is not loop:
        _redis_client = from_url(settings.REDIS_URL, decode_responses=True)
        _redis_loop = loop
    return _redis_client


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        "billing_rate_limited",
        path=request.url.path,
        key=tenant_key(request),
        limit=str(exc.detail),
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limited",
            "message": "Too many billing requests, retry later",
            "details": {"limit": str(exc.detail)},
        },
        headers={"Retry-After": "60"},
    )


def setup_rate_limiting(app: FastAPI) -> None:
    app.state.limiter = get_limiter()
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    logger.info("billing_rate_limiting_configured", enabled=get_settings().RATELIMIT_ENABLED)


def _limit(limit: str) -> Callable:
    if get_settings().TESTING:
        return lambda func: func
    return get_limiter().limit(limit)


renewal_limit = _limit(get_settings().RENEWAL_RATE_LIMIT)
verification_limit = _limit(get_settings().VERIFICATION_RATE_LIMIT)
standard_limit = _limit("100/minute")
