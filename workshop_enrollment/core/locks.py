"""
Per-workshop mutual exclusion.

Every admission decision for a workshop (seat count, waitlist head, claim,
refund) runs while holding that workshop's lock. Locks are never nested, so
there is no lock ordering to get wrong.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Optional

import structlog
from redlock import Redlock

from workshop_enrollment.domain import LockUnavailableError
from workshop_enrollment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def workshop_lock_key(workshop_id: int) -> str:
    return f"workshop:{workshop_id}:lock"


class LockManager(ABC):
    """Hands out the exclusive lock of a workshop."""

    @abstractmethod
    def hold(self, workshop_id: int) -> AsyncContextManager[None]:
        """
        Hold a workshop's lock for the duration of an ``async with`` block.

        Raises:
            LockUnavailableError: If the lock cannot be acquired
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class LocalLockManager(LockManager):
    """asyncio.Lock per workshop; correct within a single process."""

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, workshop_id: int) -> asyncio.Lock:
        lock = self._locks.get(workshop_id)
        if lock is None:
            lock = self._locks[workshop_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, workshop_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(workshop_id)
        started = time.perf_counter()
        async with lock:
            metrics.record_workshop_lock("acquired")
            try:
                yield
            finally:
                metrics.record_workshop_lock_held(time.perf_counter() - started)


class RedlockLockManager(LockManager):
    """
    Redis-backed workshop lock for multi-process deployments.

    The lock TTL must exceed the longest critical section, which includes a
    refund call to the payment provider.
    """

    def __init__(
        self,
        redis_url: str,
        ttl_ms: int = 30000,
        retry_count: int = 50,
        retry_delay: float = 0.1,
        redlock: Optional[Redlock] = None,
    ):
        """
        Initialize the lock manager.

        Args:
            redis_url: Redis connection URL
            ttl_ms: Lock time-to-live in milliseconds
            retry_count: Acquisition attempts before giving up
            retry_delay: Delay between attempts (seconds)
            redlock: Optional preconfigured Redlock instance
        """
        self.ttl_ms = ttl_ms
        self.redlock = redlock or Redlock(
            [redis_url], retry_count=retry_count, retry_delay=retry_delay
        )

    @asynccontextmanager
    async def hold(self, workshop_id: int) -> AsyncIterator[None]:
        key = workshop_lock_key(workshop_id)
        lock = await asyncio.to_thread(self.redlock.lock, key, self.ttl_ms)
        if not lock:
            metrics.record_workshop_lock("failed")
            logger.warning("workshop_lock_acquisition_failed", lock_key=key)
            raise LockUnavailableError(key)

        metrics.record_workshop_lock("acquired")
        started = time.perf_counter()
        try:
            yield
        finally:
            held = time.perf_counter() - started
            await asyncio.to_thread(self.redlock.unlock, lock)
            metrics.record_workshop_lock_held(held)
            if held * 1000 > self.ttl_ms:
                logger.error(
                    "workshop_lock_ttl_exceeded",
                    lock_key=key,
                    held_ms=int(held * 1000),
                    ttl_ms=self.ttl_ms,
                )
