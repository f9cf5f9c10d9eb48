"""
Payment event deduplication.

Providers deliver webhooks at least once. An event id is claimed atomically
before the event is applied, so two concurrent deliveries of the same event
cannot both be processed.
"""
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION_SECONDS = 86400 * 7


class EventDeduplicator(ABC):
    """Remembers processed payment event ids for a retention window."""

    @abstractmethod
    async def claim(self, event_id: str) -> bool:
        """
        Atomically mark an event id as seen.

        Returns:
            bool: True if this caller is the first to see the event
        """
        ...

    @abstractmethod
    async def release(self, event_id: str) -> None:
        """Forget an event id so a redelivery is processed again."""
        ...

    async def close(self) -> None:
        return None


class InMemoryEventDeduplicator(EventDeduplicator):
    """Process-local dedup table with expiry."""

    def __init__(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS):
        self.retention_seconds = retention_seconds
        self._seen: Dict[str, float] = {}

    def _purge(self, now: float) -> None:
        expired = [key for key, expires in self._seen.items() if expires <= now]
        for key in expired:
            del self._seen[key]

    async def claim(self, event_id: str) -> bool:
        now = time.monotonic()
        self._purge(now)
        if event_id in self._seen:
            return False
        self._seen[event_id] = now + self.retention_seconds
        return True

    async def release(self, event_id: str) -> None:
        self._seen.pop(event_id, None)


class RedisEventDeduplicator(EventDeduplicator):
    """
    Redis-backed dedup using SET NX EX.

    If Redis is unreachable the event is treated as new: the enrollment
    state machine rejects a repeated transition anyway.
    """

    def __init__(
        self,
        redis_url: str,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize the deduplicator.

        Args:
            redis_url: Redis connection URL
            retention_seconds: How long an event id is remembered
            redis_client: Optional Redis client (creates one if not provided)
        """
        self.redis_url = redis_url
        self.retention_seconds = retention_seconds
        self.redis_client = redis_client

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _key(event_id: str) -> str:
        return f"payment_event:{event_id}"

    async def claim(self, event_id: str) -> bool:
        try:
            redis = await self._ensure_redis()
            created = await redis.set(
                self._key(event_id), "1", nx=True, ex=self.retention_seconds
            )
            return bool(created)
        except RedisError as e:
            logger.warning("event_dedup_redis_error", event_id=event_id, error=str(e))
            return True

    async def release(self, event_id: str) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.delete(self._key(event_id))
        except RedisError as e:
            logger.warning("event_dedup_release_error", event_id=event_id, error=str(e))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
