"""
Windowed billing counters shared across processes.

Alert thresholds (failed payments per hour, consecutive gateway timeouts,
duplicate attempts) need counts that every API worker and the sweeper
contribute to, so counters live in Redis with atomic INCR + EXPIRE.
A process-local sink is used when Redis is not configured and in tests.
"""

import json
import time
from typing import Any, Dict, Optional, Protocol

import structlog

from app.shared.core.config import get_settings
from app.shared.core.rate_limit import get_redis_client

logger = structlog.get_logger()

COUNTER_PREFIX = "billing_metrics"
HEALTH_SNAPSHOT_KEY = "billing_health:last"


class MetricsSink(Protocol):
    async def increment(self, category: str) -> int:
        """Increment the windowed counter and return its new value."""
        ...

    async def get(self, category: str) -> int:
        ...

    async def reset(self, category: str) -> None:
        ...

    async def emit_health(self, snapshot: Dict[str, Any]) -> None:
        ...


class InMemoryMetricsSink:
    """Single-process counters with the same windowing as the Redis sink."""

    def __init__(self, window_seconds: int = 3600, clock=time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._counts: Dict[str, Dict[str, float]] = {}
        self.last_health: Optional[Dict[str, Any]] = None

    def _entry(self, category: str) -> Dict[str, float]:
        now = self._clock()
        entry = self._counts.get(category)
        if entry is None or now - entry["window_start"] > self.window_seconds:
            entry = {"count": 0, "window_start": now}
            self._counts[category] = entry
        return entry

    async def increment(self, category: str) -> int:
        entry = self._entry(category)
        entry["count"] += 1
        return int(entry["count"])

    async def get(self, category: str) -> int:
        return int(self._entry(category)["count"])

    async def reset(self, category: str) -> None:
        self._counts.pop(category, None)

    async def emit_health(self, snapshot: Dict[str, Any]) -> None:
        self.last_health = snapshot
        logger.info("billing_health_snapshot", status=snapshot.get("status"))


class RedisMetricsSink:
    """
    Counters backed by Redis.

    Redis errors degrade to the in-memory fallback instead of failing the
    billing operation that is being counted.
    """

    def __init__(self, redis, window_seconds: int = 3600, fallback: Optional[InMemoryMetricsSink] = None):
        self.redis = redis
        self.window_seconds = window_seconds
        self.fallback = fallback or InMemoryMetricsSink(window_seconds)

    @staticmethod
    def _key(category: str) -> str:
        return f"{COUNTER_PREFIX}:{category}"

    async def increment(self, category: str) -> int:
        key = self._key(category)
        try:
            # MULTI/EXEC: the counter never exists without its window.
            # NX keeps the first increment's expiry, so the window stays fixed.
            pipe = self.redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, self.window_seconds, nx=True)
            current, _ = await pipe.execute()
            return int(current)
        except Exception as e:
            logger.error("metrics_sink_redis_error", category=category, error=str(e))
            return await self.fallback.increment(category)

    async def get(self, category: str) -> int:
        try:
            value = await self.redis.get(self._key(category))
            return int(value or 0)
        except Exception as e:
            logger.error("metrics_sink_redis_error", category=category, error=str(e))
            return await self.fallback.get(category)

    async def reset(self, category: str) -> None:
        try:
            await self.redis.delete(self._key(category))
        except Exception as e:
            logger.error("metrics_sink_redis_error", category=category, error=str(e))
        await self.fallback.reset(category)

    async def emit_health(self, snapshot: Dict[str, Any]) -> None:
        try:
            await self.redis.set(HEALTH_SNAPSHOT_KEY, json.dumps(snapshot, default=str), ex=self.window_seconds * 24)
        except Exception as e:
            logger.warning("health_snapshot_store_failed", error=str(e))
        logger.info("billing_health_snapshot", status=snapshot.get("status"))


_memory_sink: Optional[InMemoryMetricsSink] = None


def get_metrics_sink() -> MetricsSink:
    """Redis sink when REDIS_URL is configured, else the process-wide memory sink."""
    global _memory_sink
    settings = get_settings()
    if _memory_sink is None:
        _memory_sink = InMemoryMetricsSink(settings.ALERT_WINDOW_SECONDS)

    redis = get_redis_client()
    if redis is None:
        return _memory_sink
    return RedisMetricsSink(redis, settings.ALERT_WINDOW_SECONDS, fallback=_memory_sink)
