"""
Enrollment orchestration.

EnrollmentCore is the single entry point for the boundary layer (HTTP,
webhooks, workers). Each command composes the ledger, the waitlist, the
payment event processor and the refund coordinator and returns a typed
result.
"""
from datetime import datetime
from typing import Any, List, Optional, Tuple
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from workshop_enrollment.config import AdmissionPolicy
from workshop_enrollment.core.clock import Clock, utcnow
from workshop_enrollment.core.dedup import EventDeduplicator
from workshop_enrollment.core.ledger import CapacityLedger
from workshop_enrollment.core.locks import LockManager
from workshop_enrollment.core.notifications import Notifier, notify_safely
from workshop_enrollment.core.payment_events import PaymentEventProcessor
from workshop_enrollment.core.refunds import RefundCoordinator
from workshop_enrollment.core.waitlist import WaitlistQueue
from workshop_enrollment.domain import (
    Availability,
    CheckoutHandle,
    CheckoutUnavailableError,
    ClaimLinkResult,
    ClaimOutcome,
    Customer,
    Enrollment,
    EnrollmentDecision,
    EnrollmentNotFoundError,
    EnrollmentResult,
    EnrollmentStatus,
    ErrorCode,
    EventResult,
    InvalidPricingOptionError,
    NoCapacity,
    PaymentEvent,
    RefundOutcome,
    RefundResult,
    SeatReservation,
    WaitlistEntry,
    WaitlistStatus,
    Workshop,
    WorkshopNotFoundError,
)
from workshop_enrollment.integrations.provider import PaymentProvider
from workshop_enrollment.integrations.stripe_client import StripeError
from workshop_enrollment.monitoring.metrics import metrics
from workshop_enrollment.stores import EnrollmentStore

logger = structlog.get_logger(__name__)


def provisional_reference(enrollment_id: UUID) -> str:
    """Payment reference a pending enrollment carries until its checkout exists."""
    return f"pending:{enrollment_id}"


def _is_provider_error(result: RefundResult) -> bool:
    return result.outcome is RefundOutcome.PROVIDER_ERROR


def _last_result(retry_state: RetryCallState) -> Any:
    return retry_state.outcome.result()


class EnrollmentCore:
    """
    Admission and reconciliation commands for workshops.

    Usage:
        core = EnrollmentCore(store, locks, provider, notifier, dedup, policy)
        result = await core.request_enrollment(workshop_id, customer)
        if result.decision is EnrollmentDecision.RESERVED:
            redirect(result.checkout.url)
    """

    def __init__(
        self,
        store: EnrollmentStore,
        locks: LockManager,
        provider: PaymentProvider,
        notifier: Notifier,
        dedup: EventDeduplicator,
        policy: AdmissionPolicy,
        clock: Clock = utcnow,
        cache_counts: bool = True,
    ):
        """
        Wire the admission components around one store and one lock manager.

        Args:
            store: Enrollment store
            locks: Per-workshop lock manager shared by every component
            provider: Payment provider
            notifier: Customer notifier
            dedup: Payment event deduplicator
            policy: Admission policy
            clock: Source of the current time
            cache_counts: Let the ledger cache seat counts (single-writer deployments)
        """
        self.store = store
        self.locks = locks
        self.provider = provider
        self.notifier = notifier
        self.policy = policy
        self.clock = clock

        self.ledger = CapacityLedger(store, locks, cache_counts=cache_counts)
        self.waitlist = WaitlistQueue(
            store, locks, notifier, policy, clock=clock, ledger=self.ledger
        )
        self.payments = PaymentEventProcessor(
            store, self.ledger, self.waitlist, locks, dedup, notifier, clock=clock
        )
        self.refunds = RefundCoordinator(
            store, provider, locks, clock=clock, ledger=self.ledger
        )

    async def _load_priced(
        self, workshop_id: int, pricing_option: Optional[str]
    ) -> Tuple[Workshop, int]:
        workshop = await self.store.load_workshop(workshop_id)
        if workshop is None:
            raise WorkshopNotFoundError(workshop_id)
        amount = workshop.price_for(pricing_option)
        if amount is None:
            raise InvalidPricingOptionError(pricing_option or "")
        return workshop, amount

    async def _reserve_pending(
        self,
        workshop: Workshop,
        customer: Customer,
        pricing_option: Optional[str],
        amount_cents: int,
        waitlist_entry_id: Optional[UUID] = None,
    ) -> Tuple[SeatReservation, Optional[Enrollment]]:
        """Reserve a seat and store its pending enrollment under the same lock."""
        created: List[Enrollment] = []

        async def persist(reservation_id: UUID) -> None:
            now = self.clock()
            enrollment = await self.store.create_enrollment(
                Enrollment(
                    id=reservation_id,
                    workshop_id=workshop.id,
                    customer=customer,
                    amount_cents=amount_cents,
                    currency=workshop.currency,
                    pricing_option=pricing_option,
                    status=EnrollmentStatus.PENDING,
                    external_payment_reference=provisional_reference(reservation_id),
                    created_at=now,
                    updated_at=now,
                    waitlist_entry_id=waitlist_entry_id,
                )
            )
            await self.store.record_enrollment_event(
                enrollment.id,
                "enrollment.created",
                {
                    "workshop_id": workshop.id,
                    "amount_cents": amount_cents,
                    "pricing_option": pricing_option,
                    "waitlist_entry_id": str(waitlist_entry_id) if waitlist_entry_id else None,
                },
            )
            created.append(enrollment)

        reservation = await self.ledger.reserve_seat(workshop.id, on_reserved=persist)
        return reservation, created[0] if created else None

    async def _open_checkout(
        self,
        workshop: Workshop,
        enrollment: Enrollment,
        entry: Optional[WaitlistEntry] = None,
    ) -> Tuple[Enrollment, CheckoutHandle]:
        try:
            checkout = await self.provider.create_checkout_session(
                enrollment.id,
                workshop,
                enrollment.customer,
                enrollment.amount_cents,
                enrollment.currency,
                enrollment.pricing_option,
            )
        except StripeError as e:
            logger.error(
                "checkout_creation_failed",
                workshop_id=workshop.id,
                enrollment_id=str(enrollment.id),
                error=str(e),
                error_type=e.error_type.value,
            )
            await self._abandon(enrollment, entry)
            raise CheckoutUnavailableError(str(e)) from e

        attached = await self.store.attach_payment_reference(enrollment.id, checkout.reference)
        return attached or enrollment, checkout

    async def _abandon(self, enrollment: Enrollment, entry: Optional[WaitlistEntry]) -> None:
        """Fail a pending enrollment whose checkout could not be opened and free its seat."""
        async with self.locks.hold(enrollment.workshop_id):
            failed = await self.store.update_enrollment_status(
                enrollment.id,
                EnrollmentStatus.FAILED,
                expected_status=EnrollmentStatus.PENDING,
            )
            if failed is not None:
                self.ledger.invalidate(enrollment.workshop_id)
                await self.store.record_enrollment_event(
                    enrollment.id,
                    "enrollment.failed",
                    {"reason": ErrorCode.CHECKOUT_UNAVAILABLE.value},
                )

        if entry is not None:
            await self.waitlist.requeue(entry)
        if failed is not None:
            await self.payments.release_and_promote(enrollment)

    async def request_enrollment(
        self,
        workshop_id: int,
        customer: Customer,
        pricing_option: Optional[str] = None,
    ) -> EnrollmentResult:
        """
        Reserve a seat and open a checkout, or route the request to the waitlist.

        Args:
            workshop_id: Workshop to enroll in
            customer: Customer identity
            pricing_option: Selected pricing option, if the workshop has several

        Returns:
            EnrollmentResult: Reserved (with checkout), Waitlisted (with
            position) or Rejected(WORKSHOP_FULL)

        Raises:
            WorkshopNotFoundError: If the workshop does not exist
            InvalidPricingOptionError: If the pricing option is not offered
            CheckoutUnavailableError: If the provider could not open a checkout
        """
        log = logger.bind(workshop_id=workshop_id, customer_email=customer.email)
        workshop, amount = await self._load_priced(workshop_id, pricing_option)

        reservation, enrollment = await self._reserve_pending(
            workshop, customer, pricing_option, amount
        )
        if isinstance(reservation, NoCapacity):
            # Re-read so a waitlist toggle made since the first load is honored
            workshop = await self.store.load_workshop(workshop_id) or workshop
            if workshop.waitlist_enabled:
                entry = await self.waitlist.enqueue(workshop_id, customer)
                metrics.record_enrollment_request(EnrollmentDecision.WAITLISTED.value)
                log.info("enrollment_waitlisted", entry_id=str(entry.id), position=entry.position)
                return EnrollmentResult(
                    EnrollmentDecision.WAITLISTED, workshop_id, waitlist_entry=entry
                )

            metrics.record_enrollment_request(EnrollmentDecision.REJECTED.value)
            log.info("enrollment_rejected", reason=ErrorCode.WORKSHOP_FULL.value)
            return EnrollmentResult(
                EnrollmentDecision.REJECTED, workshop_id, reason=ErrorCode.WORKSHOP_FULL
            )

        enrollment, checkout = await self._open_checkout(workshop, enrollment)
        metrics.record_enrollment_request(EnrollmentDecision.RESERVED.value)
        log.info(
            "enrollment_reserved",
            enrollment_id=str(enrollment.id),
            payment_reference=checkout.reference,
            remaining=str(reservation.remaining),
        )
        return EnrollmentResult(
            EnrollmentDecision.RESERVED, workshop_id, enrollment=enrollment, checkout=checkout
        )

    async def on_payment_event(self, event: PaymentEvent) -> EventResult:
        """Apply one payment event from the provider's feed."""
        return await self.payments.handle(event)

    async def _refund_with_retry(
        self, enrollment_id: UUID, amount_cents: Optional[int], reason: Optional[str]
    ) -> RefundResult:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "refund_retry_scheduled",
                enrollment_id=str(enrollment_id),
                attempt=retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            retry=retry_if_result(_is_provider_error),
            stop=stop_after_attempt(self.policy.refund_retry_attempts),
            wait=wait_exponential(multiplier=self.policy.refund_retry_backoff_seconds),
            before_sleep=log_retry,
            retry_error_callback=_last_result,
        )
        return await retrying(self.refunds.refund, enrollment_id, amount_cents, reason)

    async def on_refund_requested(
        self,
        enrollment_id: UUID,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund an enrollment, then free its seat and promote the waitlist.

        A provider failure is retried per the admission policy. A failure that
        survives the retries is escalated to an operator and returned as
        ProviderError.

        Args:
            enrollment_id: Enrollment to refund
            amount_cents: Amount to refund (defaults to the full amount)
            reason: Reason stored with the refund

        Returns:
            RefundResult
        """
        result = await self._refund_with_retry(enrollment_id, amount_cents, reason)

        if result.succeeded and result.enrollment is not None:
            await self.payments.release_and_promote(result.enrollment)
            await notify_safely(
                "refund_confirmed",
                self.notifier.refund_confirmed(result.enrollment),
                enrollment_id=str(enrollment_id),
            )
        elif result.outcome is RefundOutcome.PROVIDER_ERROR:
            metrics.record_refund_escalation()
            logger.error(
                "refund_escalated_to_operator",
                enrollment_id=str(enrollment_id),
                attempts=self.policy.refund_retry_attempts,
                error=result.message,
            )
        return result

    async def on_claim_link(
        self, workshop_id: int, token: str, pricing_option: Optional[str] = None
    ) -> ClaimLinkResult:
        """
        Redeem a waitlist claim link and open a checkout for the claimed seat.

        If the seat is gone by the time the claim is redeemed, the entry goes
        back to waiting at its original position and Requeued is returned.

        Args:
            workshop_id: Workshop the link was issued for
            token: Claim token
            pricing_option: Selected pricing option, if the workshop has several

        Returns:
            ClaimLinkResult

        Raises:
            WorkshopNotFoundError: If the workshop does not exist
            InvalidPricingOptionError: If the pricing option is not offered
            CheckoutUnavailableError: If the provider could not open a checkout
        """
        workshop, amount = await self._load_priced(workshop_id, pricing_option)

        claim = await self.waitlist.claim(workshop_id, token)
        if not claim.accepted:
            can_rejoin = claim.outcome is ClaimOutcome.EXPIRED and workshop.waitlist_enabled
            return ClaimLinkResult(
                claim.outcome, workshop_id, entry=claim.entry, can_rejoin=can_rejoin
            )

        entry = claim.entry
        reservation, enrollment = await self._reserve_pending(
            workshop, entry.customer, pricing_option, amount, waitlist_entry_id=entry.id
        )
        if isinstance(reservation, NoCapacity):
            requeued = await self.waitlist.requeue(entry)
            metrics.record_waitlist_claim(ClaimOutcome.REQUEUED.value)
            return ClaimLinkResult(ClaimOutcome.REQUEUED, workshop_id, entry=requeued)

        converted = await self.waitlist.mark_converted(entry, enrollment.id)
        await self.store.record_enrollment_event(
            enrollment.id, "waitlist.claim_converted", {"waitlist_entry_id": str(entry.id)}
        )
        enrollment, checkout = await self._open_checkout(workshop, enrollment, converted)
        logger.info(
            "waitlist_claim_converted",
            workshop_id=workshop_id,
            entry_id=str(entry.id),
            enrollment_id=str(enrollment.id),
        )
        return ClaimLinkResult(
            ClaimOutcome.ACCEPTED,
            workshop_id,
            entry=converted,
            enrollment=enrollment,
            checkout=checkout,
        )

    async def get_enrollment(self, enrollment_id: UUID) -> Enrollment:
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(str(enrollment_id))
        return enrollment

    async def availability(self, workshop_id: int) -> Availability:
        """
        Lock-free snapshot of remaining seats and waitlist length.

        Raises:
            WorkshopNotFoundError: If the workshop does not exist
        """
        workshop = await self.store.load_workshop(workshop_id)
        if workshop is None:
            raise WorkshopNotFoundError(workshop_id)
        remaining = await self.ledger.remaining(workshop_id)
        waiting = await self.store.list_waitlist(workshop_id, WaitlistStatus.WAITING)
        return Availability(
            workshop_id=workshop_id,
            capacity=workshop.capacity,
            remaining=remaining,
            waitlist_enabled=workshop.waitlist_enabled,
            waiting=len(waiting),
        )

    async def sweep_expired_claims(self, now: Optional[datetime] = None) -> int:
        """Expire overdue claim offers and promote the next waiting entries."""
        return await self.waitlist.expire_sweep(now)

    async def cancel_waitlist_entry(self, workshop_id: int, entry_id: UUID) -> WaitlistEntry:
        return await self.waitlist.cancel(workshop_id, entry_id)
