"""
Notification delivery worker.

Drains the outbox table written by OutboxNotifier and delivers each customer
message. Delivery is log-only: each message is written as a structured
``notification_delivered`` event for a log-shipping pipeline to forward.
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from workshop_enrollment.core.outbox import OutboxPublisher
from workshop_enrollment.database import close_db, get_session_factory
from workshop_enrollment.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

SUBJECTS = {
    "enrollment.confirmed": "Your workshop seat is confirmed",
    "enrollment.refunded": "Your workshop refund has been issued",
    "waitlist.joined": "You are on the workshop waitlist",
    "waitlist.claim_offered": "A workshop seat is available for you",
}


async def deliver_notification(message: Dict[str, Any]) -> None:
    """
    Deliver one customer notification by logging it.

    Args:
        message: Outbox message (event_type, aggregate_id, payload)
    """
    subject = SUBJECTS.get(message["event_type"], message["event_type"])
    logger.info(
        "notification_delivered",
        event_type=message["event_type"],
        aggregate_id=message["aggregate_id"],
        subject=subject,
        email=message["payload"].get("customer_email"),
    )


async def start_outbox_publisher(batch_size: int = 100, poll_interval_seconds: float = 1.0) -> None:
    """Run the publisher until SIGINT or SIGTERM."""
    setup_logging()
    publisher = OutboxPublisher(
        get_session_factory(),
        deliver=deliver_notification,
        batch_size=batch_size,
        poll_interval_seconds=poll_interval_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(start_outbox_publisher())
