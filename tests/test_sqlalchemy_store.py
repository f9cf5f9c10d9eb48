"""
Tests for the SQLAlchemy store against an in-memory SQLite database.
"""
from dataclasses import replace
from datetime import timedelta

import pytest
import pytest_asyncio

from workshop_enrollment.core import EnrollmentCore, InMemoryEventDeduplicator, LocalLockManager
from workshop_enrollment.domain import (
    DuplicateEnrollmentError,
    EnrollmentDecision,
    EnrollmentStatus,
    EventOutcome,
    RefundOutcome,
    RefundRecord,
    WaitlistStatus,
    token_digest,
)
from workshop_enrollment.stores import SqlAlchemyEnrollmentStore

from tests.factories import (
    START,
    checkout_completed,
    make_customer,
    make_enrollment,
    make_workshop,
)


@pytest_asyncio.fixture
async def sql_store(session_factory) -> SqlAlchemyEnrollmentStore:
    store = SqlAlchemyEnrollmentStore(session_factory)
    await store.save_workshop(make_workshop(pricing_options={"standard": 15000}))
    return store


class TestEnrollments:
    """Enrollment rows and conditional status updates."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_workshop_round_trip(self, sql_store) -> None:
        workshop = await sql_store.load_workshop(1)

        assert workshop.capacity == 2
        assert workshop.waitlist_enabled is True
        assert workshop.pricing_options == {"standard": 15000}
        assert await sql_store.load_workshop(2) is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_find(self, sql_store) -> None:
        enrollment = make_enrollment(reference="cs_test_1", payment_intent="pi_1")
        await sql_store.create_enrollment(enrollment)

        loaded = await sql_store.get_enrollment(enrollment.id)
        assert loaded == enrollment
        assert (await sql_store.find_enrollment_by_reference("cs_test_1")).id == enrollment.id
        assert (await sql_store.find_enrollment_by_reference("pi_1")).id == enrollment.id
        assert await sql_store.find_enrollment_by_reference("cs_other") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_payment_reference(self, sql_store) -> None:
        await sql_store.create_enrollment(make_enrollment(reference="cs_test_dup"))

        with pytest.raises(DuplicateEnrollmentError):
            await sql_store.create_enrollment(make_enrollment(reference="cs_test_dup"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_enrollment_id(self, sql_store) -> None:
        enrollment = await sql_store.create_enrollment(make_enrollment())

        with pytest.raises(DuplicateEnrollmentError):
            await sql_store.create_enrollment(
                replace(enrollment, external_payment_reference="cs_other")
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_attach_payment_reference(self, sql_store) -> None:
        enrollment = await sql_store.create_enrollment(make_enrollment(reference="pending:1"))
        await sql_store.create_enrollment(make_enrollment(reference="cs_taken"))

        attached = await sql_store.attach_payment_reference(enrollment.id, "cs_test_new")
        assert attached.external_payment_reference == "cs_test_new"
        with pytest.raises(DuplicateEnrollmentError):
            await sql_store.attach_payment_reference(enrollment.id, "cs_taken")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_update_is_conditional(self, sql_store) -> None:
        enrollment = await sql_store.create_enrollment(make_enrollment())

        completed = await sql_store.update_enrollment_status(
            enrollment.id,
            EnrollmentStatus.COMPLETED,
            expected_status=EnrollmentStatus.PENDING,
            payment_intent_reference="pi_2",
        )
        stale = await sql_store.update_enrollment_status(
            enrollment.id, EnrollmentStatus.FAILED, expected_status=EnrollmentStatus.PENDING
        )

        assert completed.status is EnrollmentStatus.COMPLETED
        assert completed.payment_intent_reference == "pi_2"
        assert stale is None
        assert (await sql_store.get_enrollment(enrollment.id)).status is EnrollmentStatus.COMPLETED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_fields_written_with_status(self, sql_store) -> None:
        enrollment = await sql_store.create_enrollment(
            make_enrollment(status=EnrollmentStatus.COMPLETED, payment_intent="pi_3")
        )

        refunded = await sql_store.update_enrollment_status(
            enrollment.id,
            EnrollmentStatus.REFUNDED,
            expected_status=EnrollmentStatus.COMPLETED,
            refund=RefundRecord("re_1", 5000, "cannot attend", START),
        )

        assert refunded.refund_reference == "re_1"
        assert refunded.refund_amount_cents == 5000
        assert refunded.refund_reason == "cannot attend"
        assert refunded.refunded_at == START

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_count_active(self, sql_store) -> None:
        for status in EnrollmentStatus:
            if status is EnrollmentStatus.REFUNDED:
                continue
            await sql_store.create_enrollment(make_enrollment(status=status))

        assert await sql_store.count_active_enrollments(1) == 2
        assert await sql_store.count_active_enrollments(2) == 0


class TestWaitlistEntries:
    """Waitlist rows, tokens and expiry queries."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_positions_increase(self, sql_store) -> None:
        first = await sql_store.append_waitlist_entry(1, make_customer(1), START)
        second = await sql_store.append_waitlist_entry(1, make_customer(2), START)

        assert (first.position, second.position) == (1, 2)
        assert [e.id for e in await sql_store.list_waitlist(1)] == [first.id, second.id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_find_active_by_email(self, sql_store) -> None:
        entry = await sql_store.append_waitlist_entry(1, make_customer(1), START)

        found = await sql_store.find_active_waitlist_entry(1, "CUSTOMER1@example.com ")

        assert found.id == entry.id
        assert await sql_store.find_active_waitlist_entry(1, "customer2@example.com") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_token_lookup_and_spent_digest(self, sql_store) -> None:
        entry = await sql_store.append_waitlist_entry(1, make_customer(1), START)
        offered = await sql_store.update_waitlist_entry(
            entry.id,
            WaitlistStatus.CLAIM_OFFERED,
            START,
            claim_token="tok_abc",
            claim_expires_at=START + timedelta(hours=48),
            expected_status=WaitlistStatus.WAITING,
        )
        assert offered.notified_at == START
        assert (await sql_store.find_waitlist_entry_by_token("tok_abc")).id == entry.id

        claimed = await sql_store.update_waitlist_entry(
            entry.id,
            WaitlistStatus.CLAIMED,
            START,
            spent_token_digest=token_digest("tok_abc"),
            expected_status=WaitlistStatus.CLAIM_OFFERED,
        )

        assert claimed.claim_token is None
        assert (await sql_store.find_waitlist_entry_by_token("tok_abc")).id == entry.id
        assert await sql_store.find_waitlist_entry_by_token("tok_other") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_offers(self, sql_store) -> None:
        entry = await sql_store.append_waitlist_entry(1, make_customer(1), START)
        await sql_store.update_waitlist_entry(
            entry.id,
            WaitlistStatus.CLAIM_OFFERED,
            START,
            claim_token="tok_exp",
            claim_expires_at=START + timedelta(hours=1),
        )

        assert await sql_store.list_expired_offers(START + timedelta(minutes=59)) == []
        expired = await sql_store.list_expired_offers(START + timedelta(hours=1))
        assert [e.id for e in expired] == [entry.id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_waitlisted_workshops(self, sql_store) -> None:
        await sql_store.save_workshop(make_workshop(2))
        await sql_store.save_workshop(make_workshop(3))
        await sql_store.append_waitlist_entry(3, make_customer(1), START)
        await sql_store.append_waitlist_entry(3, make_customer(2), START)
        await sql_store.append_waitlist_entry(1, make_customer(3), START)
        offered = await sql_store.append_waitlist_entry(2, make_customer(4), START)
        await sql_store.update_waitlist_entry(
            offered.id, WaitlistStatus.CLAIM_OFFERED, START, claim_token="tok_2"
        )

        assert await sql_store.list_waitlisted_workshops() == [1, 3]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_enrollment_lifecycle_on_sql_store(sql_store, provider, notifier, policy, clock) -> None:
    await sql_store.save_workshop(make_workshop())
    core = EnrollmentCore(
        sql_store,
        LocalLockManager(),
        provider,
        notifier,
        InMemoryEventDeduplicator(),
        policy,
        clock=clock,
    )

    reserved = await core.request_enrollment(1, make_customer(1))
    await core.request_enrollment(1, make_customer(2))
    waitlisted = await core.request_enrollment(1, make_customer(3))
    applied = await core.on_payment_event(
        checkout_completed(reserved.enrollment, payment_intent="pi_sql")
    )
    refund = await core.on_refund_requested(reserved.enrollment.id)

    assert reserved.decision is EnrollmentDecision.RESERVED
    assert waitlisted.decision is EnrollmentDecision.WAITLISTED
    assert applied.outcome is EventOutcome.APPLIED
    assert refund.outcome is RefundOutcome.SUCCESS
    entry = await sql_store.get_waitlist_entry(waitlisted.waitlist_entry.id)
    assert entry.status is WaitlistStatus.CLAIM_OFFERED
    assert await sql_store.count_active_enrollments(1) == 1
