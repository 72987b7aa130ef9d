import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.core.cache import CacheService
from app.shared.core.locks import LockStore
from app.shared.core.ops_metrics import DEPENDENCY_UP

logger = structlog.get_logger()

CheckResult = Tuple[bool, Dict[str, Any]]


async def _timed(name: str, check: Callable[[], Awaitable[Any]]) -> CheckResult:
    start = time.perf_counter()
    try:
        answered = await check()
    except Exception as e:
        logger.warning("billing_dependency_down", dependency=name, error=str(e))
        return False, {"error": str(e)}
    if answered is False:
        logger.warning("billing_dependency_down", dependency=name, error="no answer")
        return False, {"error": f"{name} did not answer"}
    return True, {"latency_ms": round((time.perf_counter() - start) * 1000, 2)}


class HealthService:
    """
    Billing dependency checks.

    The database is required (down means unhealthy). The lock store, the
    subscription cache and the payment gateway only degrade the service:
    renewals fail closed on lock errors, cache errors read as misses and
    verification can be retried.
    """

    def __init__(
        self,
        db: AsyncSession,
        lock_store: Optional[LockStore] = None,
        gateway=None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.lock_store = lock_store
        self.gateway = gateway
        self.cache = cache

    async def check_all(self) -> Dict[str, Any]:
        checks = {
            "database": await self.check_database(),
            "redis": await self.check_lock_store(),
            "cache": await self.check_cache(),
            "gateway": await self.check_gateway(),
        }

        if not checks["database"][0]:
            status = "unhealthy"
        elif all(ok for ok, _ in checks.values()):
            status = "healthy"
        else:
            status = "degraded"

        report: Dict[str, Any] = {"status": status}
        for name, (ok, details) in checks.items():
            DEPENDENCY_UP.labels(dependency=name).set(1 if ok else 0)
            report[name] = {"status": "up" if ok else "down", **details}
        return report

    async def check_database(self) -> CheckResult:
        return await _timed("database", lambda: self.db.execute(text("SELECT 1")))

    async def check_lock_store(self) -> CheckResult:
        if self.lock_store is None:
            return True, {"skipped": True}
        return await _timed("redis", self.lock_store.ping)

    async def check_cache(self) -> CheckResult:
        if self.cache is None or not self.cache.enabled:
            return True, {"skipped": True}
        return await _timed("cache", self.cache.ping)

    async def check_gateway(self) -> CheckResult:
        if self.gateway is None:
            return False, {"error": "Payment gateway not configured"}
        return await _timed("gateway", self.gateway.ping)
