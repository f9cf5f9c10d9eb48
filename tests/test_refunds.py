"""
Tests for RefundCoordinator guards and exactly-once refunds.
"""
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio

from workshop_enrollment.core import RefundCoordinator
from workshop_enrollment.domain import EnrollmentStatus, RefundOutcome
from workshop_enrollment.integrations import StripeError, StripeErrorType

from tests.factories import make_enrollment


@pytest.fixture
def refunds(store, provider, locks, clock) -> RefundCoordinator:
    return RefundCoordinator(store, provider, locks, clock=clock)


@pytest_asyncio.fixture
async def paid(store, workshop):
    """A completed enrollment with a captured payment."""
    return await store.create_enrollment(
        make_enrollment(status=EnrollmentStatus.COMPLETED, payment_intent="pi_paid")
    )


class TestRefund:
    """Guards and the refunded transition."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund(self, refunds, paid, provider, store, clock) -> None:
        result = await refunds.refund(paid.id, reason="requested_by_customer")

        assert result.outcome is RefundOutcome.SUCCESS
        assert result.refund_reference == "re_test_1"
        assert provider.refunds == [
            {
                "reference": "re_test_1",
                "payment_reference": "pi_paid",
                "amount_cents": 15000,
                "reason": "requested_by_customer",
                "idempotency_key": f"refund:{paid.id}",
            }
        ]
        stored = await store.get_enrollment(paid.id)
        assert stored.status is EnrollmentStatus.REFUNDED
        assert stored.refund_reference == "re_test_1"
        assert stored.refund_amount_cents == 15000
        assert stored.refunded_at == clock()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_still_refunds_enrollment(self, refunds, paid, store) -> None:
        result = await refunds.refund(paid.id, amount_cents=5000)

        assert result.succeeded
        stored = await store.get_enrollment(paid.id)
        assert stored.status is EnrollmentStatus.REFUNDED
        assert stored.refund_amount_cents == 5000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_refund_is_already_refunded(self, refunds, paid, provider) -> None:
        await refunds.refund(paid.id)

        again = await refunds.refund(paid.id)

        assert again.outcome is RefundOutcome.ALREADY_REFUNDED
        assert again.refund_reference == "re_test_1"
        assert len(provider.refunds) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_larger_refund_after_partial_is_already_refunded(
        self, refunds, store, workshop, provider
    ) -> None:
        enrollment = await store.create_enrollment(
            make_enrollment(
                status=EnrollmentStatus.COMPLETED, payment_intent="pi_100", amount_cents=10000
            )
        )
        first = await refunds.refund(enrollment.id, amount_cents=5000)
        assert first.outcome is RefundOutcome.SUCCESS

        second = await refunds.refund(enrollment.id, amount_cents=6000)

        assert second.outcome is RefundOutcome.ALREADY_REFUNDED
        assert [r["amount_cents"] for r in provider.refunds] == [5000]
        assert (await store.get_enrollment(enrollment.id)).refund_amount_cents == 5000

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100, 15001])
    async def test_amount_outside_original_is_invalid(self, refunds, paid, provider, amount) -> None:
        result = await refunds.refund(paid.id, amount_cents=amount)

        assert result.outcome is RefundOutcome.INVALID_AMOUNT
        assert provider.refunds == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_enrollment_has_no_payment_record(self, refunds) -> None:
        result = await refunds.refund(uuid4())

        assert result.outcome is RefundOutcome.NO_PAYMENT_RECORD

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_enrollment_has_no_payment_record(self, refunds, store, workshop) -> None:
        pending = await store.create_enrollment(make_enrollment())

        result = await refunds.refund(pending.id)

        assert result.outcome is RefundOutcome.NO_PAYMENT_RECORD

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_without_payment_intent(self, refunds, store, workshop) -> None:
        completed = await store.create_enrollment(make_enrollment(status=EnrollmentStatus.COMPLETED))

        result = await refunds.refund(completed.id)

        assert result.outcome is RefundOutcome.NO_PAYMENT_RECORD

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_error_changes_nothing(self, refunds, paid, provider, store) -> None:
        provider.refund_errors.append(
            StripeError("Stripe API unavailable", StripeErrorType.TRANSIENT)
        )

        result = await refunds.refund(paid.id)

        assert result.outcome is RefundOutcome.PROVIDER_ERROR
        assert result.message == "Stripe API unavailable"
        stored = await store.get_enrollment(paid.id)
        assert stored.status is EnrollmentStatus.COMPLETED
        assert stored.refund_reference is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_receives_idempotency_key(self, store, locks, paid) -> None:
        provider = AsyncMock()
        provider.create_refund.return_value = "re_mock"
        refunds = RefundCoordinator(store, provider, locks)

        await refunds.refund(paid.id, reason="duplicate")

        provider.create_refund.assert_awaited_once_with(
            "pi_paid", 15000, reason="duplicate", idempotency_key=f"refund:{paid.id}"
        )


class TestRefundQueries:
    """can_refund and refund_details."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_can_refund(self, refunds, paid) -> None:
        assert await refunds.can_refund(paid.id) is True
        await refunds.refund(paid.id)
        assert await refunds.can_refund(paid.id) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_details(self, refunds, paid, clock) -> None:
        assert await refunds.refund_details(paid.id) is None

        await refunds.refund(paid.id, amount_cents=7500, reason="requested_by_customer")

        assert await refunds.refund_details(paid.id) == {
            "enrollment_id": str(paid.id),
            "refund_reference": "re_test_1",
            "amount_cents": 7500,
            "reason": "requested_by_customer",
            "refunded_at": clock().isoformat(),
        }
