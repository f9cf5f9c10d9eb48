"""
Concurrency tests: interleaved commands against one workshop.

The in-memory store and the fake provider yield to the event loop on every
call, so asyncio.gather interleaves the commands at each await.
"""
import asyncio

import pytest

from workshop_enrollment.domain import (
    ClaimOutcome,
    EnrollmentDecision,
    EventOutcome,
    RefundOutcome,
    WaitlistStatus,
)

from tests.factories import (
    checkout_completed,
    make_customer,
    make_workshop,
    payment_failed,
    refund_issued,
)


@pytest.mark.race
@pytest.mark.asyncio
async def test_concurrent_requests_never_oversell(core, store) -> None:
    await store.save_workshop(make_workshop(capacity=5))

    results = await asyncio.gather(
        *(core.request_enrollment(1, make_customer(n)) for n in range(50))
    )

    decisions = [r.decision for r in results]
    assert decisions.count(EnrollmentDecision.RESERVED) == 5
    assert decisions.count(EnrollmentDecision.WAITLISTED) == 45
    assert await store.count_active_enrollments(1) == 5
    positions = sorted(r.position for r in results if r.waitlist_entry)
    assert positions == list(range(1, 46))


@pytest.mark.race
@pytest.mark.asyncio
async def test_concurrent_redelivery_applies_once(core, workshop, notifier) -> None:
    reserved = await core.request_enrollment(1, make_customer(1))
    event = checkout_completed(reserved.enrollment, event_id="evt_storm")

    results = await asyncio.gather(*(core.on_payment_event(event) for _ in range(10)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(EventOutcome.APPLIED) == 1
    assert outcomes.count(EventOutcome.DUPLICATE_IGNORED) == 9
    assert len(notifier.of_kind("enrollment.confirmed")) == 1


@pytest.mark.race
@pytest.mark.asyncio
async def test_concurrent_refunds_call_provider_once(core, workshop, provider) -> None:
    reserved = await core.request_enrollment(1, make_customer(1))
    await core.on_payment_event(checkout_completed(reserved.enrollment, payment_intent="pi_1"))

    results = await asyncio.gather(
        *(core.on_refund_requested(reserved.enrollment.id) for _ in range(5))
    )

    outcomes = [r.outcome for r in results]
    assert outcomes.count(RefundOutcome.SUCCESS) == 1
    assert outcomes.count(RefundOutcome.ALREADY_REFUNDED) == 4
    assert len(provider.refunds) == 1


@pytest.mark.race
@pytest.mark.asyncio
async def test_refund_and_provider_event_race(core, workshop, store) -> None:
    reserved = await core.request_enrollment(1, make_customer(1))
    await core.on_payment_event(checkout_completed(reserved.enrollment, payment_intent="pi_1"))

    await asyncio.gather(
        core.on_refund_requested(reserved.enrollment.id),
        core.on_payment_event(refund_issued("pi_1", "re_test_1")),
    )

    stored = await store.get_enrollment(reserved.enrollment.id)
    assert stored.refund_reference == "re_test_1"
    refunded = [e for e in store.events if e[1] == "enrollment.refunded"]
    assert len(refunded) == 1


@pytest.mark.race
@pytest.mark.asyncio
async def test_concurrent_claims_of_one_token(core, workshop, store) -> None:
    first = await core.request_enrollment(1, make_customer(1))
    await core.request_enrollment(1, make_customer(2))
    waitlisted = await core.request_enrollment(1, make_customer(3))
    await core.on_payment_event(payment_failed(first.enrollment))
    token = (await store.get_waitlist_entry(waitlisted.waitlist_entry.id)).claim_token

    results = await asyncio.gather(*(core.on_claim_link(1, token) for _ in range(5)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ClaimOutcome.ACCEPTED) == 1
    assert outcomes.count(ClaimOutcome.ALREADY_CLAIMED) == 4
    assert await store.count_active_enrollments(1) == 2


@pytest.mark.race
@pytest.mark.asyncio
async def test_freed_seats_and_new_requests_stay_within_capacity(core, store) -> None:
    await store.save_workshop(make_workshop(capacity=5))
    held = [await core.request_enrollment(1, make_customer(n)) for n in range(5)]
    for n in range(5, 15):
        await core.request_enrollment(1, make_customer(n))

    await asyncio.gather(
        *(core.on_payment_event(payment_failed(r.enrollment)) for r in held),
        *(core.request_enrollment(1, make_customer(n)) for n in range(100, 110)),
    )

    assert await store.count_active_enrollments(1) <= 5
    offered = await store.list_waitlist(1, WaitlistStatus.CLAIM_OFFERED)
    assert len(offered) == 5
    assert [e.position for e in offered] == [1, 2, 3, 4, 5]
