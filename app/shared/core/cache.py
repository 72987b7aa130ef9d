"""
Subscription view cache (Upstash Redis)

Holds the serialized current-subscription view per tenant. The database
stays the source of truth: entries are invalidated after verification,
reconciliation, expiry and cancellation commit, and any cache error is
treated as a miss.
"""

import json
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from upstash_redis.asyncio import Redis as AsyncRedis

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Bump when the cached view shape changes
VIEW_VERSION = 1

_client: Optional[AsyncRedis] = None


def _get_client() -> Optional[AsyncRedis]:
    global _client
    settings = get_settings()
    if not settings.UPSTASH_REDIS_URL or not settings.UPSTASH_REDIS_TOKEN:
        return None
    if _client is None:
        _client = AsyncRedis(url=settings.UPSTASH_REDIS_URL, token=settings.UPSTASH_REDIS_TOKEN)
        logger.info("subscription_cache_connected")
    return _client


def subscription_key(tenant_id: UUID) -> str:
    return f"medora:subscription:v{VIEW_VERSION}:{tenant_id}"


class CacheService:
    """Read-through cache for subscription views. A no-op without a client."""

    def __init__(self, client: Optional[AsyncRedis] = None, ttl: Optional[timedelta] = None):
        self.client = client
        self.ttl = ttl or timedelta(minutes=get_settings().SUBSCRIPTION_CACHE_TTL_MINUTES)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get_subscription(self, tenant_id: UUID) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            raw = await self.client.get(subscription_key(tenant_id))
        except Exception as e:
            logger.warning("subscription_cache_read_failed", tenant_id=str(tenant_id), error=str(e))
            return None
        if not raw:
            return None
        try:
            return json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            logger.warning("subscription_cache_corrupt", tenant_id=str(tenant_id))
            return None

    async def set_subscription(self, tenant_id: UUID, view: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            await self.client.set(
                subscription_key(tenant_id),
                json.dumps(view, default=str),
                ex=int(self.ttl.total_seconds()),
            )
            return True
        except Exception as e:
            logger.warning("subscription_cache_write_failed", tenant_id=str(tenant_id), error=str(e))
            return False

    async def invalidate_subscription(self, tenant_id: UUID) -> bool:
        """Drop the tenant's view. Called only after the state change has committed."""
        if not self.enabled:
            return False
        try:
            await self.client.delete(subscription_key(tenant_id))
        except Exception as e:
            # The entry ages out within the TTL
            logger.error("subscription_cache_invalidate_failed", tenant_id=str(tenant_id), error=str(e))
            return False
        logger.info("subscription_cache_invalidated", tenant_id=str(tenant_id))
        return True

    async def ping(self) -> bool:
        """Raises when Upstash is unreachable; callers decide what that means."""
        return bool(await self.client.ping())


_cache_service: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService(_get_client())
    return _cache_service
