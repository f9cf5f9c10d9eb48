"""
Delivery side of the notification outbox.

OutboxNotifier writes one row per customer message; this publisher drains
those rows in creation order and hands each to a delivery coroutine (mail
or SMS gateway). A row is marked published only after its delivery
returned, so a crash between the two re-sends the message rather than
losing it.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_enrollment.database.models import OutboxEvent
from workshop_enrollment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Deliver = Callable[[Dict[str, Any]], Awaitable[None]]

_PENDING = OutboxEvent.published == False  # noqa: E712


def notification_message(event: OutboxEvent) -> Dict[str, Any]:
    """Shape an outbox row into the message handed to the delivery channel."""
    return {
        "id": event.id,
        "event_type": event.event_type,
        "recipient_type": event.aggregate_type,
        "aggregate_id": str(event.aggregate_id),
        "payload": event.payload,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def log_delivery(message: Dict[str, Any]) -> None:
    logger.info(
        "notification_logged",
        event_type=message["event_type"],
        aggregate_id=message["aggregate_id"],
    )


class OutboxPublisher:
    """Drains pending notification rows, at least once per row."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        deliver: Optional[Deliver] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        self.session_factory = session_factory
        self.deliver = deliver or log_delivery
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._stopped = asyncio.Event()

    async def _deliver(self, event: OutboxEvent) -> bool:
        try:
            await self.deliver(notification_message(event))
        except Exception as e:
            logger.warning(
                "notification_delivery_failed",
                outbox_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False
        metrics.record_outbox_event_published(event.event_type)
        return True

    async def process_batch(self) -> int:
        """
        Deliver one batch of pending notifications.

        Rows whose delivery failed stay pending and are retried on the
        next batch.

        Returns:
            int: Number of notifications delivered
        """
        async with self.session_factory() as db:
            pending = (
                await db.execute(
                    select(OutboxEvent)
                    .where(_PENDING)
                    .order_by(OutboxEvent.created_at, OutboxEvent.id)
                    .limit(self.batch_size)
                )
            ).scalars().all()

            delivered: List[int] = [event.id for event in pending if await self._deliver(event)]
            if delivered:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(delivered))
                    .values(published=True, published_at=datetime.now(timezone.utc))
                )
                await db.commit()

        if pending:
            logger.info(
                "outbox_batch_delivered",
                delivered=len(delivered),
                failed=len(pending) - len(delivered),
            )
        return len(delivered)

    async def get_pending_count(self) -> int:
        async with self.session_factory() as db:
            count = await db.execute(select(func.count(OutboxEvent.id)).where(_PENDING))
            return int(count.scalar_one())

    async def start(self) -> None:
        """Poll until stop() is called; a full batch is followed immediately by the next."""
        self._stopped.clear()
        logger.info(
            "outbox_publisher_started",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )
        while not self._stopped.is_set():
            try:
                delivered = await self.process_batch()
                metrics.set_outbox_queue_depth(await self.get_pending_count())
            except Exception as e:
                logger.error("outbox_publisher_error", error=str(e))
                delivered = 0

            if delivered < self.batch_size:
                try:
                    await asyncio.wait_for(self._stopped.wait(), self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        self._stopped.set()
