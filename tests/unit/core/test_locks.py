import pytest
from unittest.mock import AsyncMock

from app.shared.core.exceptions import LockContention
from app.shared.core.locks import (
    InMemoryLockStore,
    LockKind,
    LockManager,
    TENANT_LOCK_PATTERNS,
    lock_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_lock_key_is_scoped_per_kind():
    assert lock_key(LockKind.RENEWAL, "t1") == "renewal_lock:t1"
    assert lock_key(LockKind.VERIFICATION, "t1") != lock_key(LockKind.RENEWAL, "t1")


@pytest.mark.asyncio
async def test_second_acquire_is_refused():
    manager = LockManager(InMemoryLockStore(), ttl_seconds=60)
    token = await manager.acquire("renewal_lock:t1")
    assert token is not None
    assert await manager.acquire("renewal_lock:t1") is None


@pytest.mark.asyncio
async def test_release_requires_owner_token():
    store = InMemoryLockStore()
    manager = LockManager(store, ttl_seconds=60)
    token = await manager.acquire("renewal_lock:t1")

    await manager.release("renewal_lock:t1", "someone-else")
    assert await manager.acquire("renewal_lock:t1") is None

    await manager.release("renewal_lock:t1", token)
    assert await manager.acquire("renewal_lock:t1") is not None


@pytest.mark.asyncio
async def test_lease_expires_after_ttl():
    clock = FakeClock()
    manager = LockManager(InMemoryLockStore(clock=clock), ttl_seconds=60)
    assert await manager.acquire("renewal_lock:t1")
    clock.now += 61
    assert await manager.acquire("renewal_lock:t1") is not None


@pytest.mark.asyncio
async def test_hold_raises_contention_and_releases():
    manager = LockManager(InMemoryLockStore(), ttl_seconds=60)
    async with manager.hold("renewal_lock:t1", operation="renewal"):
        with pytest.raises(LockContention) as exc:
            async with manager.hold("renewal_lock:t1", operation="renewal"):
                pass
        assert exc.value.status_code == 409
        assert exc.value.retryable is True

    # Released on exit
    assert await manager.acquire("renewal_lock:t1") is not None


@pytest.mark.asyncio
async def test_hold_releases_on_error():
    manager = LockManager(InMemoryLockStore(), ttl_seconds=60)
    with pytest.raises(RuntimeError):
        async with manager.hold("renewal_lock:t1", operation="renewal"):
            raise RuntimeError("boom")
    assert await manager.acquire("renewal_lock:t1") is not None


@pytest.mark.asyncio
async def test_store_error_is_reported_as_contention():
    store = AsyncMock()
    store.set_if_absent.side_effect = ConnectionError("redis down")
    manager = LockManager(store, ttl_seconds=60)
    with pytest.raises(LockContention):
        await manager.acquire("renewal_lock:t1")


@pytest.mark.asyncio
async def test_cleanup_clears_only_long_held_leases():
    clock = FakeClock()
    store = InMemoryLockStore(clock=clock)
    manager = LockManager(store, ttl_seconds=60)

    await manager.acquire("renewal_lock:old")
    clock.now += 50
    await manager.acquire("verification_lock:fresh")
    await manager.acquire("reconciliation_lock:global")

    cleared = await manager.cleanup_orphaned(TENANT_LOCK_PATTERNS, orphan_after_seconds=45)

    assert cleared == 1
    assert await store.scan("renewal_lock:*") == []
    assert await store.scan("verification_lock:*") == ["verification_lock:fresh"]
    # The sweep lock is not a tenant lock
    assert await store.scan("reconciliation_lock:*") == ["reconciliation_lock:global"]


@pytest.mark.asyncio
async def test_cleanup_deletes_only_the_holder_it_read():
    store = AsyncMock()
    store.scan.return_value = ["renewal_lock:t1"]
    store.get.return_value = "holder-a"
    store.get_ttl.return_value = 1
    # Lease changed hands between the read and the delete
    store.delete.return_value = False
    manager = LockManager(store, ttl_seconds=60)

    cleared = await manager.cleanup_orphaned(("renewal_lock:*",), orphan_after_seconds=45)

    assert cleared == 0
    store.delete.assert_awaited_once_with("renewal_lock:t1", expected_value="holder-a")


@pytest.mark.asyncio
async def test_cleanup_spares_longer_lease_within_its_budget():
    clock = FakeClock()
    store = InMemoryLockStore(clock=clock)
    manager = LockManager(store, ttl_seconds=60)

    token = await manager.acquire("verification_lock:t1", ttl_seconds=100)
    clock.now += 90

    assert await manager.cleanup_orphaned(TENANT_LOCK_PATTERNS, orphan_after_seconds=55) == 0
    assert await store.get("verification_lock:t1") == token

    clock.now += 6
    assert await manager.cleanup_orphaned(TENANT_LOCK_PATTERNS, orphan_after_seconds=55) == 1
