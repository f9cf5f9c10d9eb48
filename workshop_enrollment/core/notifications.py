"""
Customer notifications.

Notifications are fire-and-forget from the admission core's point of view:
a failed notification is logged and counted, never propagated into the
decision that triggered it.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_enrollment.database.models import OutboxEvent
from workshop_enrollment.domain import Enrollment, WaitlistEntry
from workshop_enrollment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Delivers customer-facing messages about enrollments and the waitlist."""

    @abstractmethod
    async def enrollment_confirmed(self, enrollment: Enrollment) -> None:
        ...

    @abstractmethod
    async def waitlist_joined(self, entry: WaitlistEntry) -> None:
        ...

    @abstractmethod
    async def claim_offered(self, entry: WaitlistEntry, claim_url: str) -> None:
        """Tell a promoted customer how to claim their seat and until when."""
        ...

    @abstractmethod
    async def refund_confirmed(self, enrollment: Enrollment) -> None:
        ...


async def notify_safely(kind: str, send: Awaitable[None], **context: Any) -> bool:
    """
    Await a notification, logging instead of raising on failure.

    Args:
        kind: Notification kind for logs and metrics
        send: The notifier coroutine
        **context: Extra fields for the log event

    Returns:
        bool: True if the notification was handed off
    """
    try:
        await send
        return True
    except Exception as e:
        metrics.record_notification_failure(kind)
        logger.warning("notification_failed", kind=kind, error=str(e), **context)
        return False


def _enrollment_payload(enrollment: Enrollment) -> Dict[str, Any]:
    return {
        "enrollment_id": str(enrollment.id),
        "workshop_id": enrollment.workshop_id,
        "customer_name": enrollment.customer.name,
        "customer_email": enrollment.customer.email,
        "amount_cents": enrollment.amount_cents,
        "currency": enrollment.currency,
        "status": enrollment.status.value,
        "refund_reference": enrollment.refund_reference,
        "refund_amount_cents": enrollment.refund_amount_cents,
    }


def _waitlist_payload(entry: WaitlistEntry) -> Dict[str, Any]:
    return {
        "waitlist_entry_id": str(entry.id),
        "workshop_id": entry.workshop_id,
        "customer_name": entry.customer.name,
        "customer_email": entry.customer.email,
        "position": entry.position,
        "claim_expires_at": (
            entry.claim_expires_at.isoformat() if entry.claim_expires_at else None
        ),
    }


class LoggingNotifier(Notifier):
    """Writes notifications to the structured log and keeps them for inspection."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((kind, payload))
        # Claim links carry the full token
        loggable = {key: value for key, value in payload.items() if key != "claim_url"}
        logger.info("notification_sent", kind=kind, **loggable)

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [payload for sent_kind, payload in self.sent if sent_kind == kind]

    async def enrollment_confirmed(self, enrollment: Enrollment) -> None:
        self._emit("enrollment.confirmed", _enrollment_payload(enrollment))

    async def waitlist_joined(self, entry: WaitlistEntry) -> None:
        self._emit("waitlist.joined", _waitlist_payload(entry))

    async def claim_offered(self, entry: WaitlistEntry, claim_url: str) -> None:
        self._emit("waitlist.claim_offered", {**_waitlist_payload(entry), "claim_url": claim_url})

    async def refund_confirmed(self, enrollment: Enrollment) -> None:
        self._emit("enrollment.refunded", _enrollment_payload(enrollment))


class OutboxNotifier(Notifier):
    """
    Queues notifications in the transactional outbox table.

    The outbox publisher worker delivers them to the mail provider.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _write(
        self,
        aggregate_id: UUID,
        aggregate_type: str,
        event_type: str,
        payload: Dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> None:
        """
        Write event to transactional outbox.

        Args:
            aggregate_id: Aggregate ID (enrollment or waitlist entry)
            aggregate_type: Aggregate type ('enrollment' or 'waitlist_entry')
            event_type: Event type (e.g., 'enrollment.confirmed')
            payload: Event payload
        """
        async with self.session_factory() as db:
            db.add(
                OutboxEvent(
                    aggregate_id=aggregate_id,
                    aggregate_type=aggregate_type,
                    event_type=event_type,
                    payload=payload,
                    published=False,
                    created_at=created_at or datetime.now(timezone.utc),
                )
            )
            await db.commit()
        logger.debug("outbox_event_written", event_type=event_type, aggregate_id=str(aggregate_id))

    async def enrollment_confirmed(self, enrollment: Enrollment) -> None:
        await self._write(
            enrollment.id, "enrollment", "enrollment.confirmed", _enrollment_payload(enrollment)
        )

    async def waitlist_joined(self, entry: WaitlistEntry) -> None:
        await self._write(entry.id, "waitlist_entry", "waitlist.joined", _waitlist_payload(entry))

    async def claim_offered(self, entry: WaitlistEntry, claim_url: str) -> None:
        await self._write(
            entry.id,
            "waitlist_entry",
            "waitlist.claim_offered",
            {**_waitlist_payload(entry), "claim_url": claim_url},
        )

    async def refund_confirmed(self, enrollment: Enrollment) -> None:
        await self._write(
            enrollment.id, "enrollment", "enrollment.refunded", _enrollment_payload(enrollment)
        )
