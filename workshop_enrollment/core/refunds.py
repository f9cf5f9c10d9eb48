"""
Refund coordination.

A refund is checked, sent to the provider and recorded under the workshop
lock, so a concurrent duplicate request finds the enrollment already
refunded and the provider's own refund event arrives as a duplicate.
"""
from typing import Any, Dict, Optional
from uuid import UUID

import structlog

from workshop_enrollment.core.clock import Clock, utcnow
from workshop_enrollment.core.ledger import CapacityLedger
from workshop_enrollment.core.locks import LockManager
from workshop_enrollment.domain import (
    Enrollment,
    EnrollmentStatus,
    RefundOutcome,
    RefundRecord,
    RefundResult,
)
from workshop_enrollment.integrations.provider import PaymentProvider
from workshop_enrollment.integrations.stripe_client import StripeError
from workshop_enrollment.monitoring.metrics import metrics
from workshop_enrollment.stores import EnrollmentStore

logger = structlog.get_logger(__name__)


def refund_idempotency_key(enrollment_id: UUID) -> str:
    return f"refund:{enrollment_id}"


class RefundCoordinator:
    """Issues at most one refund per enrollment."""

    def __init__(
        self,
        store: EnrollmentStore,
        provider: PaymentProvider,
        locks: LockManager,
        clock: Clock = utcnow,
        ledger: Optional[CapacityLedger] = None,
    ):
        self.store = store
        self.provider = provider
        self.locks = locks
        self.clock = clock
        self.ledger = ledger

    async def refund(
        self,
        enrollment_id: UUID,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a completed enrollment.

        Guards, in order: the enrollment exists, is not already refunded, is
        completed, the amount is within (0, original amount], and a provider
        payment reference exists. A partial refund still moves the enrollment
        to refunded.

        Args:
            enrollment_id: Enrollment to refund
            amount_cents: Amount to refund (defaults to the full amount)
            reason: Free-text reason stored with the refund

        Returns:
            RefundResult: Success, AlreadyRefunded, NoPaymentRecord,
            InvalidAmount or ProviderError
        """
        log = logger.bind(enrollment_id=str(enrollment_id))

        snapshot = await self.store.get_enrollment(enrollment_id)
        if snapshot is None:
            return self._finish(
                log, RefundResult(RefundOutcome.NO_PAYMENT_RECORD, enrollment_id)
            )

        async with self.locks.hold(snapshot.workshop_id):
            enrollment = await self.store.get_enrollment(enrollment_id)
            guard = self._check(enrollment, amount_cents)
            if guard is not None:
                return self._finish(log, guard)

            amount = amount_cents if amount_cents is not None else enrollment.amount_cents
            try:
                refund_reference = await self.provider.create_refund(
                    enrollment.provider_payment_reference,
                    amount,
                    reason=reason,
                    idempotency_key=refund_idempotency_key(enrollment.id),
                )
            except StripeError as e:
                log.error(
                    "refund_provider_error",
                    error=str(e),
                    error_type=e.error_type.value,
                    retryable=e.retryable,
                )
                return self._finish(
                    log,
                    RefundResult(
                        RefundOutcome.PROVIDER_ERROR,
                        enrollment_id,
                        enrollment=enrollment,
                        message=str(e),
                    ),
                )

            updated = await self.store.update_enrollment_status(
                enrollment.id,
                EnrollmentStatus.REFUNDED,
                expected_status=EnrollmentStatus.COMPLETED,
                refund=RefundRecord(
                    reference=refund_reference,
                    amount_cents=amount,
                    reason=reason,
                    refunded_at=self.clock(),
                ),
            )
            if updated is None:
                # Provider refund went through but the row moved under us
                log.error("refund_not_recorded", refund_reference=refund_reference)
                return self._finish(
                    log,
                    RefundResult(
                        RefundOutcome.ALREADY_REFUNDED,
                        enrollment_id,
                        refund_reference=refund_reference,
                    ),
                )

            if self.ledger is not None:
                self.ledger.invalidate(enrollment.workshop_id)
            await self.store.record_enrollment_event(
                enrollment.id,
                "enrollment.refunded",
                {
                    "refund_reference": refund_reference,
                    "amount_cents": amount,
                    "reason": reason,
                },
            )

        log.info("refund_issued", refund_reference=refund_reference, amount_cents=amount)
        return self._finish(
            log,
            RefundResult(
                RefundOutcome.SUCCESS,
                enrollment_id,
                refund_reference=refund_reference,
                enrollment=updated,
            ),
        )

    @staticmethod
    def _check(
        enrollment: Optional[Enrollment], amount_cents: Optional[int]
    ) -> Optional[RefundResult]:
        if enrollment is None:
            return RefundResult(RefundOutcome.NO_PAYMENT_RECORD)
        if enrollment.status is EnrollmentStatus.REFUNDED or enrollment.refund_reference:
            return RefundResult(
                RefundOutcome.ALREADY_REFUNDED,
                enrollment.id,
                refund_reference=enrollment.refund_reference,
                enrollment=enrollment,
            )
        if enrollment.status is not EnrollmentStatus.COMPLETED:
            return RefundResult(
                RefundOutcome.NO_PAYMENT_RECORD,
                enrollment.id,
                enrollment=enrollment,
                message=f"Enrollment is {enrollment.status.value}",
            )
        if amount_cents is not None and not 0 < amount_cents <= enrollment.amount_cents:
            return RefundResult(
                RefundOutcome.INVALID_AMOUNT,
                enrollment.id,
                enrollment=enrollment,
                message=f"Amount must be between 1 and {enrollment.amount_cents}",
            )
        if not enrollment.provider_payment_reference:
            return RefundResult(
                RefundOutcome.NO_PAYMENT_RECORD,
                enrollment.id,
                enrollment=enrollment,
                message="No captured payment to refund",
            )
        return None

    @staticmethod
    def _finish(log: Any, result: RefundResult) -> RefundResult:
        metrics.record_refund(result.outcome.value)
        if not result.succeeded and result.outcome is not RefundOutcome.PROVIDER_ERROR:
            log.info("refund_rejected", outcome=result.outcome.value)
        return result

    async def can_refund(self, enrollment_id: UUID) -> bool:
        """Whether a full refund would pass every guard right now."""
        enrollment = await self.store.get_enrollment(enrollment_id)
        return self._check(enrollment, None) is None

    async def refund_details(self, enrollment_id: UUID) -> Optional[Dict[str, Any]]:
        """Refund fields of a refunded enrollment, or None if it was not refunded."""
        enrollment = await self.store.get_enrollment(enrollment_id)
        if enrollment is None or enrollment.refund_reference is None:
            return None
        return {
            "enrollment_id": str(enrollment.id),
            "refund_reference": enrollment.refund_reference,
            "amount_cents": enrollment.refund_amount_cents,
            "reason": enrollment.refund_reason,
            "refunded_at": enrollment.refunded_at.isoformat() if enrollment.refunded_at else None,
        }
