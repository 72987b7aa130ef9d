"""
Distributed Lock Manager

Leased mutual exclusion keyed by tenant and operation kind. The critical
sections it guards span a payment gateway call, so the lock lives in a
shared key-value store (Redis SET NX EX) rather than in a database row.

Guarantees:
- acquisition is atomic set-if-absent, so two callers never both win
- a refused acquisition surfaces LockContention, never a silent proceed
- release is best effort; the lease TTL recovers crashed holders
"""

import asyncio
import fnmatch
import secrets
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Protocol, Tuple

import structlog

from app.shared.core.config import get_settings
from app.shared.core.exceptions import LockContention
from app.shared.core.ops_metrics import LOCK_CONTENTION, ORPHANED_LOCKS_CLEARED
from app.shared.core.rate_limit import get_redis_client

logger = structlog.get_logger()


class LockKind(str, Enum):
    RENEWAL = "renewal_lock"
    VERIFICATION = "verification_lock"
    RECONCILIATION = "reconciliation_lock"


# Only per-tenant leases are subject to the orphan scan
TENANT_LOCK_PATTERNS = (f"{LockKind.RENEWAL.value}:*", f"{LockKind.VERIFICATION.value}:*")


def lock_key(kind: LockKind, scope) -> str:
    """renewal_lock:<tenant_id>, verification_lock:<tenant_id>, ..."""
    return f"{kind.value}:{scope}"


class LockStore(Protocol):
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def get_ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds, -1 for a key without expiry, None when absent."""
        ...

    async def delete(self, key: str, expected_value: Optional[str] = None) -> bool:
        ...

    async def scan(self, pattern: str) -> List[str]:
        ...

    async def ping(self) -> bool:
        ...


# Delete only when the caller still owns the lease
_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLockStore:
    def __init__(self, redis):
        self.redis = redis

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self.redis.set(key, value, nx=True, ex=ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def get_ttl(self, key: str) -> Optional[int]:
        ttl = await self.redis.ttl(key)
        if ttl == -2:
            return None
        return int(ttl)

    async def delete(self, key: str, expected_value: Optional[str] = None) -> bool:
        if expected_value is None:
            return bool(await self.redis.delete(key))
        return bool(await self.redis.eval(_COMPARE_AND_DELETE, 1, key, expected_value))

    async def scan(self, pattern: str) -> List[str]:
        return [key async for key in self.redis.scan_iter(match=pattern)]

    async def ping(self) -> bool:
        return bool(await self.redis.ping())


class InMemoryLockStore:
    """
    Process-local lock store.

    Only safe for a single process (local development, tests). Each
    method completes without awaiting, so set_if_absent is atomic on the
    event loop.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def _purge(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry and entry[1] is not None and entry[1] <= self._clock():
            del self._entries[key]

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._purge(key)
        if key in self._entries:
            return False
        self._entries[key] = (value, self._clock() + ttl_seconds)
        return True

    async def get(self, key: str) -> Optional[str]:
        self._purge(key)
        entry = self._entries.get(key)
        return entry[0] if entry else None

    async def get_ttl(self, key: str) -> Optional[int]:
        self._purge(key)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] is None:
            return -1
        return max(0, int(entry[1] - self._clock()))

    async def delete(self, key: str, expected_value: Optional[str] = None) -> bool:
        self._purge(key)
        entry = self._entries.get(key)
        if entry is None:
            return False
        if expected_value is not None and entry[0] != expected_value:
            return False
        del self._entries[key]
        return True

    async def scan(self, pattern: str) -> List[str]:
        for key in list(self._entries):
            self._purge(key)
        return [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]

    async def ping(self) -> bool:
        return True


class LockManager:
    """Acquire/release leases on a LockStore."""

    def __init__(
        self,
        store: LockStore,
        ttl_seconds: int = 60,
        acquire_wait_seconds: float = 0.0,
        poll_interval_seconds: float = 0.1,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.acquire_wait_seconds = acquire_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds

    async def acquire(self, key: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Returns the holder token, or None when another holder owns the key.

        Waits at most ``acquire_wait_seconds`` polling for the key to free up.
        A lock store error is reported as contention: proceeding unlocked is
        never an option.
        """
        token = secrets.token_hex(16)
        ttl = ttl_seconds or self.ttl_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_wait_seconds

        while True:
            try:
                if await self.store.set_if_absent(key, token, ttl):
                    logger.debug("lock_acquired", key=key, ttl_seconds=ttl)
                    return token
            except Exception as e:
                logger.error("lock_store_unavailable", key=key, error=str(e))
                raise LockContention(
                    "Lock store unavailable, retry later",
                    details={"key": key},
                ) from e

            if loop.time() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval_seconds)

    async def release(self, key: str, token: str) -> None:
        """Best effort. Never raises: the lease TTL is the safety net."""
        try:
            released = await self.store.delete(key, expected_value=token)
            if not released:
                logger.warning("lock_release_not_owner", key=key)
        except Exception as e:
            logger.warning("lock_release_failed", key=key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: str, operation: str, ttl_seconds: Optional[int] = None) -> AsyncIterator[str]:
        token = await self.acquire(key, ttl_seconds)
        if token is None:
            LOCK_CONTENTION.labels(operation=operation).inc()
            logger.info("lock_contention", key=key, operation=operation)
            raise LockContention(
                f"A {operation} is already in progress for this tenant, retry shortly",
                details={"operation": operation},
            )
        try:
            yield token
        finally:
            await self.release(key, token)

    async def cleanup_orphaned(
        self,
        patterns=TENANT_LOCK_PATTERNS,
        orphan_after_seconds: Optional[int] = None,
    ) -> int:
        """
        Clear leases held longer than any legitimate operation needs.

        A lease is orphaned once its remaining TTL drops below
        ``ttl_seconds - orphan_after_seconds`` (or when it has no expiry at
        all). For a default lease that is a hold time past
        ``orphan_after_seconds``; a longer lease such as the sweeper's gets
        the same headroom before its own expiry.

        The holder token is read first and the delete is compare-and-delete,
        so a lease that expired and was re-acquired in between survives.
        """
        orphan_after = orphan_after_seconds or get_settings().LOCK_ORPHAN_AFTER_SECONDS
        cleared = 0
        for pattern in patterns:
            kind = pattern.split(":", 1)[0]
            try:
                keys = await self.store.scan(pattern)
            except Exception as e:
                logger.error("orphaned_lock_scan_failed", pattern=pattern, error=str(e))
                continue

            for key in keys:
                try:
                    holder = await self.store.get(key)
                    ttl = await self.store.get_ttl(key)
                    if holder is None or ttl is None:
                        continue
                    held_for = self.ttl_seconds - ttl
                    if ttl == -1 or held_for > orphan_after:
                        if await self.store.delete(key, expected_value=holder):
                            cleared += 1
                            ORPHANED_LOCKS_CLEARED.labels(kind=kind).inc()
                            logger.warning("orphaned_lock_cleared", key=key, remaining_ttl=ttl)
                except Exception as e:
                    logger.error("orphaned_lock_cleanup_failed", key=key, error=str(e))
        return cleared


_memory_store: Optional[InMemoryLockStore] = None


def get_lock_store() -> LockStore:
    """Redis store when REDIS_URL is configured, else the process-wide memory store."""
    global _memory_store
    redis = get_redis_client()
    if redis is not None:
        return RedisLockStore(redis)
    if _memory_store is None:
        logger.warning("lock_store_in_memory", msg="REDIS_URL not set; locks are process-local")
        _memory_store = InMemoryLockStore()
    return _memory_store


def get_lock_manager() -> LockManager:
    settings = get_settings()
    return LockManager(
        get_lock_store(),
        ttl_seconds=settings.LOCK_TTL_SECONDS,
        acquire_wait_seconds=settings.LOCK_ACQUIRE_WAIT_SECONDS,
    )
