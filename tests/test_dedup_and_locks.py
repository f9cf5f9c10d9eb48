"""
Tests for payment event deduplication and workshop locks.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from workshop_enrollment.core import (
    InMemoryEventDeduplicator,
    LocalLockManager,
    RedisEventDeduplicator,
    RedlockLockManager,
    workshop_lock_key,
)
from workshop_enrollment.domain import LockUnavailableError


class TestInMemoryDeduplicator:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_claim_wins(self) -> None:
        dedup = InMemoryEventDeduplicator()

        assert await dedup.claim("evt_1") is True
        assert await dedup.claim("evt_1") is False
        assert await dedup.claim("evt_2") is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_allows_redelivery(self) -> None:
        dedup = InMemoryEventDeduplicator()
        await dedup.claim("evt_1")

        await dedup.release("evt_1")

        assert await dedup.claim("evt_1") is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entries_expire(self) -> None:
        dedup = InMemoryEventDeduplicator(retention_seconds=0)

        assert await dedup.claim("evt_1") is True
        assert await dedup.claim("evt_1") is True


class TestRedisDeduplicator:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_uses_set_nx_with_retention(self) -> None:
        client = AsyncMock()
        client.set.side_effect = [True, None]
        dedup = RedisEventDeduplicator("redis://unused", retention_seconds=60, redis_client=client)

        assert await dedup.claim("evt_1") is True
        assert await dedup.claim("evt_1") is False
        client.set.assert_awaited_with("payment_event:evt_1", "1", nx=True, ex=60)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_deletes_key(self) -> None:
        client = AsyncMock()
        dedup = RedisEventDeduplicator("redis://unused", redis_client=client)

        await dedup.release("evt_1")

        client.delete.assert_awaited_once_with("payment_event:evt_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_treats_event_as_new(self) -> None:
        client = AsyncMock()
        client.set.side_effect = RedisConnectionError("connection refused")
        dedup = RedisEventDeduplicator("redis://unused", redis_client=client)

        assert await dedup.claim("evt_1") is True


class TestLocalLocks:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_workshop_is_serialized(self) -> None:
        locks = LocalLockManager()
        inside = 0
        peak = 0

        async def critical() -> None:
            nonlocal inside, peak
            async with locks.hold(1):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(10)))

        assert peak == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_workshops_do_not_block_each_other(self) -> None:
        locks = LocalLockManager()

        async with locks.hold(1):
            await asyncio.wait_for(self._enter(locks, 2), timeout=1)

    @staticmethod
    async def _enter(locks: LocalLockManager, workshop_id: int) -> None:
        async with locks.hold(workshop_id):
            pass


class TestRedlockLocks:

    @pytest.mark.unit
    def test_lock_key(self) -> None:
        assert workshop_lock_key(42) == "workshop:42:lock"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquires_and_releases(self) -> None:
        redlock = MagicMock()
        handle = object()
        redlock.lock.return_value = handle
        locks = RedlockLockManager("redis://unused", ttl_ms=5000, redlock=redlock)

        async with locks.hold(7):
            redlock.unlock.assert_not_called()

        redlock.lock.assert_called_once_with("workshop:7:lock", 5000)
        redlock.unlock.assert_called_once_with(handle)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_released_when_body_raises(self) -> None:
        redlock = MagicMock()
        redlock.lock.return_value = "handle"
        locks = RedlockLockManager("redis://unused", redlock=redlock)

        with pytest.raises(RuntimeError):
            async with locks.hold(7):
                raise RuntimeError("boom")

        redlock.unlock.assert_called_once_with("handle")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unavailable_lock(self) -> None:
        redlock = MagicMock()
        redlock.lock.return_value = False
        locks = RedlockLockManager("redis://unused", redlock=redlock)

        with pytest.raises(LockUnavailableError):
            async with locks.hold(7):
                pass
        redlock.unlock.assert_not_called()
