"""
Payment event processing.

Drives the enrollment state machine from the provider's at-least-once event
feed:

    pending   --(checkout_completed)--> completed
    pending   --(payment_failed)------> failed
    completed --(refund_issued)-------> refunded

Any other combination is an illegal transition: logged and acknowledged,
never retried.
"""
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from uuid import uuid4

import structlog

from workshop_enrollment.core.clock import Clock, utcnow
from workshop_enrollment.core.dedup import EventDeduplicator
from workshop_enrollment.core.ledger import CapacityLedger
from workshop_enrollment.core.locks import LockManager
from workshop_enrollment.core.notifications import Notifier, notify_safely
from workshop_enrollment.core.waitlist import WaitlistQueue
from workshop_enrollment.domain import (
    DuplicateEnrollmentError,
    Enrollment,
    EnrollmentStatus,
    EventOutcome,
    EventResult,
    PaymentEvent,
    PaymentEventType,
    RefundRecord,
)
from workshop_enrollment.monitoring.metrics import metrics
from workshop_enrollment.stores import EnrollmentStore

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[Tuple[EnrollmentStatus, PaymentEventType], EnrollmentStatus] = {
    (EnrollmentStatus.PENDING, PaymentEventType.CHECKOUT_COMPLETED): EnrollmentStatus.COMPLETED,
    (EnrollmentStatus.PENDING, PaymentEventType.PAYMENT_FAILED): EnrollmentStatus.FAILED,
    (EnrollmentStatus.COMPLETED, PaymentEventType.REFUND_ISSUED): EnrollmentStatus.REFUNDED,
}

PROVIDER_REFUND_REASON = "refunded_at_provider"


@dataclass(frozen=True)
class _Applied:
    result: EventResult
    previous_status: Optional[EnrollmentStatus] = None


class PaymentEventProcessor:
    """
    Applies payment events exactly once per event id.

    The status transition runs under the workshop lock shared with the
    ledger, the waitlist and refunds; notifications, seat release and
    waitlist promotion run after the lock is released.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        ledger: CapacityLedger,
        waitlist: WaitlistQueue,
        locks: LockManager,
        dedup: EventDeduplicator,
        notifier: Notifier,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.waitlist = waitlist
        self.locks = locks
        self.dedup = dedup
        self.notifier = notifier
        self.clock = clock

    async def handle(self, event: PaymentEvent) -> EventResult:
        """
        Apply one payment event.

        Args:
            event: Provider-neutral payment event

        Returns:
            EventResult: Applied, DuplicateIgnored, NoMatchingEnrollment or
            IllegalTransition
        """
        started = time.perf_counter()
        log = logger.bind(event_id=event.event_id, event_type=event.type.value)

        if not await self.dedup.claim(event.event_id):
            log.info("payment_event_duplicate_ignored")
            result = EventResult(EventOutcome.DUPLICATE_IGNORED, event.event_id)
            self._record(event, result, started)
            return result

        try:
            applied = await self._apply(event)
        except Exception as e:
            await self.dedup.release(event.event_id)
            log.error("payment_event_processing_failed", error=str(e))
            raise

        self._record(event, applied.result, started)
        if applied.result.outcome is EventOutcome.APPLIED and applied.result.enrollment:
            await self._after_transition(applied.result.enrollment)
        return applied.result

    def _record(self, event: PaymentEvent, result: EventResult, started: float) -> None:
        metrics.record_payment_event(
            event.type.value, result.outcome.value, time.perf_counter() - started
        )

    async def _resolve(self, event: PaymentEvent) -> Optional[Enrollment]:
        enrollment = await self.store.find_enrollment_by_reference(event.payment_reference)
        if enrollment is None and event.payment_intent_reference:
            enrollment = await self.store.find_enrollment_by_reference(
                event.payment_intent_reference
            )
        if enrollment is None and event.enrollment_id is not None:
            enrollment = await self.store.get_enrollment(event.enrollment_id)
            if (
                enrollment is not None
                and event.workshop_id is not None
                and enrollment.workshop_id != event.workshop_id
            ):
                enrollment = None
        return enrollment

    async def _create_from_event(self, event: PaymentEvent) -> Optional[Enrollment]:
        if event.workshop_id is None or event.customer is None:
            return None
        workshop = await self.store.load_workshop(event.workshop_id)
        if workshop is None:
            return None

        now = self.clock()
        enrollment = Enrollment(
            id=event.enrollment_id or uuid4(),
            workshop_id=workshop.id,
            customer=event.customer,
            amount_cents=event.amount_cents or 0,
            currency=event.currency or workshop.currency,
            pricing_option=event.pricing_option,
            status=EnrollmentStatus.PENDING,
            external_payment_reference=event.payment_reference,
            payment_intent_reference=event.payment_intent_reference,
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self.store.create_enrollment(enrollment)
        except DuplicateEnrollmentError:
            return await self._resolve(event)

        self.ledger.invalidate(workshop.id)
        await self.store.record_enrollment_event(
            created.id,
            "enrollment.created_from_event",
            {"event_id": event.event_id, "payment_reference": event.payment_reference},
            correlation_id=event.event_id,
        )
        logger.info(
            "enrollment_created_from_event",
            event_id=event.event_id,
            enrollment_id=str(created.id),
            workshop_id=workshop.id,
        )
        return created

    async def _apply(self, event: PaymentEvent) -> _Applied:
        log = logger.bind(event_id=event.event_id, event_type=event.type.value)

        # Unlocked lookup only to learn which workshop lock to take
        snapshot = await self._resolve(event)
        if snapshot is not None:
            workshop_id = snapshot.workshop_id
        elif event.type is PaymentEventType.CHECKOUT_COMPLETED and event.workshop_id is not None:
            workshop_id = event.workshop_id
        else:
            log.warning("payment_event_no_matching_enrollment", reference=event.payment_reference)
            return _Applied(
                EventResult(
                    EventOutcome.NO_MATCHING_ENROLLMENT,
                    event.event_id,
                    message="No enrollment matches this payment reference",
                )
            )

        async with self.locks.hold(workshop_id):
            enrollment = await self._resolve(event)
            if enrollment is None and event.type is PaymentEventType.CHECKOUT_COMPLETED:
                enrollment = await self._create_from_event(event)
            if enrollment is None:
                log.warning(
                    "payment_event_no_matching_enrollment", reference=event.payment_reference
                )
                return _Applied(
                    EventResult(
                        EventOutcome.NO_MATCHING_ENROLLMENT,
                        event.event_id,
                        message="No enrollment matches this payment reference",
                    )
                )
            return await self._transition_locked(event, enrollment)

    async def _transition_locked(self, event: PaymentEvent, enrollment: Enrollment) -> _Applied:
        log = logger.bind(
            event_id=event.event_id,
            event_type=event.type.value,
            enrollment_id=str(enrollment.id),
            workshop_id=enrollment.workshop_id,
        )
        target = TRANSITIONS.get((enrollment.status, event.type))

        if target is None:
            if self._is_refund_echo(event, enrollment):
                log.info("refund_event_already_applied", refund_reference=enrollment.refund_reference)
                return _Applied(
                    EventResult(EventOutcome.DUPLICATE_IGNORED, event.event_id, enrollment)
                )
            log.warning("payment_event_illegal_transition", status=enrollment.status.value)
            return _Applied(
                EventResult(
                    EventOutcome.ILLEGAL_TRANSITION,
                    event.event_id,
                    enrollment,
                    message=f"Cannot apply {event.type.value} to a {enrollment.status.value} enrollment",
                )
            )

        refund = None
        if target is EnrollmentStatus.REFUNDED:
            refund = RefundRecord(
                reference=event.refund_reference or event.event_id,
                amount_cents=event.amount_cents or enrollment.amount_cents,
                reason=PROVIDER_REFUND_REASON,
                refunded_at=self.clock(),
            )

        updated = await self.store.update_enrollment_status(
            enrollment.id,
            target,
            expected_status=enrollment.status,
            payment_intent_reference=event.payment_intent_reference,
            refund=refund,
        )
        if updated is None:
            log.warning("payment_event_status_changed_concurrently")
            return _Applied(
                EventResult(EventOutcome.ILLEGAL_TRANSITION, event.event_id, enrollment)
            )

        if not target.holds_seat:
            self.ledger.invalidate(enrollment.workshop_id)

        await self.store.record_enrollment_event(
            enrollment.id,
            f"enrollment.{target.value}",
            {
                "event_id": event.event_id,
                "from_status": enrollment.status.value,
                "to_status": target.value,
                "refund_reference": updated.refund_reference,
            },
            correlation_id=event.event_id,
        )
        log.info(
            "payment_event_applied",
            from_status=enrollment.status.value,
            to_status=target.value,
        )
        return _Applied(
            EventResult(EventOutcome.APPLIED, event.event_id, updated),
            previous_status=enrollment.status,
        )

    @staticmethod
    def _is_refund_echo(event: PaymentEvent, enrollment: Enrollment) -> bool:
        """A refund_issued for a refund this system already recorded."""
        return (
            event.type is PaymentEventType.REFUND_ISSUED
            and enrollment.status is EnrollmentStatus.REFUNDED
            and (
                event.refund_reference is None
                or event.refund_reference == enrollment.refund_reference
            )
        )

    async def _after_transition(self, enrollment: Enrollment) -> None:
        if enrollment.status is EnrollmentStatus.COMPLETED:
            await notify_safely(
                "enrollment_confirmed",
                self.notifier.enrollment_confirmed(enrollment),
                enrollment_id=str(enrollment.id),
            )
        elif enrollment.status is EnrollmentStatus.FAILED:
            await self.release_and_promote(enrollment)
        elif enrollment.status is EnrollmentStatus.REFUNDED:
            await self.release_and_promote(enrollment)
            await notify_safely(
                "refund_confirmed",
                self.notifier.refund_confirmed(enrollment),
                enrollment_id=str(enrollment.id),
            )

    async def release_and_promote(self, enrollment: Enrollment) -> bool:
        """
        Free an enrollment's seat and offer it to the waitlist.

        Runs after the status change has committed, so a failure here is
        logged and counted rather than raised: the event is already applied
        and its redelivery would be deduplicated. The expiry sweep offers any
        seat left free with someone still waiting.

        The seat release completes (and drops its lock) before promotion
        takes the lock again. Promotion happens at most once per enrollment.

        Returns:
            bool: True if the seat was released and the waitlist consulted
        """
        stage = "release"
        try:
            released = await self.ledger.release_seat(enrollment.workshop_id, enrollment.id)
            if released:
                stage = "promotion"
                await self.waitlist.promote_head(enrollment.workshop_id)
            return released
        except Exception as e:
            metrics.record_seat_recovery_pending(stage)
            logger.error(
                "seat_release_or_promotion_failed",
                stage=stage,
                enrollment_id=str(enrollment.id),
                workshop_id=enrollment.workshop_id,
                error=str(e),
            )
            return False
