"""
Tests for Stripe webhook verification and event translation.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest

from workshop_enrollment.domain import EventOutcome, EventResult, PaymentEvent, PaymentEventType
from workshop_enrollment.integrations import WebhookError, WebhookHandler, to_payment_event

SECRET = "whsec_test_fake_secret"


def sign(payload: bytes, secret: str = SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def checkout_session(**overrides: Any) -> Dict[str, Any]:
    session = {
        "id": "cs_test_abc",
        "object": "checkout.session",
        "payment_status": "paid",
        "payment_intent": "pi_abc",
        "amount_total": 15000,
        "currency": "usd",
        "customer_details": {"email": "Ada@Example.com", "name": "Ada", "phone": None},
        "metadata": {
            "workshop_id": "1",
            "enrollment_id": "8f14e45f-ceea-467f-a8b1-6b6e7c1d2a90",
            "pricing_option": "",
        },
    }
    session.update(overrides)
    return session


class RecordingCore:
    """Stands in for EnrollmentCore.on_payment_event."""

    def __init__(self) -> None:
        self.events: List[PaymentEvent] = []

    async def __call__(self, event: PaymentEvent) -> EventResult:
        self.events.append(event)
        return EventResult(EventOutcome.APPLIED, event.event_id)


@pytest.fixture
def recorder() -> RecordingCore:
    return RecordingCore()


@pytest.fixture
def handler(recorder: RecordingCore) -> WebhookHandler:
    return WebhookHandler(SECRET, recorder)


class TestSignature:
    """Stripe-Signature verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_signature_dispatches(self, handler, recorder) -> None:
        payload = json.dumps(stripe_event("checkout.session.completed", checkout_session())).encode()

        result = await handler.handle(payload, sign(payload))

        assert result.outcome is EventOutcome.APPLIED
        assert recorder.events[0].payment_reference == "cs_test_abc"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature(self, handler, recorder) -> None:
        payload = json.dumps(stripe_event("checkout.session.completed", checkout_session())).encode()

        with pytest.raises(WebhookError):
            await handler.handle(payload, None)
        assert recorder.events == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_secret(self, handler, recorder) -> None:
        payload = json.dumps(stripe_event("checkout.session.completed", checkout_session())).encode()

        with pytest.raises(WebhookError):
            await handler.handle(payload, sign(payload, secret="whsec_other"))
        assert recorder.events == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_body(self, handler) -> None:
        payload = json.dumps(stripe_event("checkout.session.completed", checkout_session())).encode()
        header = sign(payload)
        tampered = payload.replace(b"15000", b"1")

        with pytest.raises(WebhookError):
            await handler.handle(tampered, header)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_timestamp(self, handler) -> None:
        payload = json.dumps(stripe_event("checkout.session.completed", checkout_session())).encode()

        with pytest.raises(WebhookError):
            await handler.handle(payload, sign(payload, timestamp=int(time.time()) - 3600))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_body_that_is_not_utf8(self, handler, recorder) -> None:
        with pytest.raises(WebhookError):
            await handler.handle(b"\xff\xfe{}", "t=1,v1=abc")
        assert recorder.events == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signed_body_that_is_not_an_event(self, handler) -> None:
        payload = b'{"hello": "world"}'

        with pytest.raises(WebhookError):
            await handler.handle(payload, sign(payload))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignored_event_type(self, handler, recorder) -> None:
        payload = json.dumps(stripe_event("customer.created", {"id": "cus_1"})).encode()

        assert await handler.handle(payload, sign(payload)) is None
        assert recorder.events == []


class TestToPaymentEvent:
    """Stripe event types mapped onto payment events."""

    @pytest.mark.unit
    def test_checkout_completed(self) -> None:
        event = to_payment_event(stripe_event("checkout.session.completed", checkout_session()))

        assert event.type is PaymentEventType.CHECKOUT_COMPLETED
        assert event.payment_reference == "cs_test_abc"
        assert event.payment_intent_reference == "pi_abc"
        assert event.amount_cents == 15000
        assert event.currency == "USD"
        assert event.workshop_id == 1
        assert event.pricing_option is None
        assert str(event.enrollment_id) == "8f14e45f-ceea-467f-a8b1-6b6e7c1d2a90"
        assert event.customer.email == "ada@example.com"
        assert event.customer.phone == ""

    @pytest.mark.unit
    def test_unpaid_completion_waits_for_async_payment(self) -> None:
        unpaid = checkout_session(payment_status="unpaid")

        assert to_payment_event(stripe_event("checkout.session.completed", unpaid)) is None
        settled = to_payment_event(stripe_event("checkout.session.async_payment_succeeded", unpaid))
        assert settled.type is PaymentEventType.CHECKOUT_COMPLETED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "event_type",
        ["checkout.session.expired", "checkout.session.async_payment_failed"],
    )
    def test_failed_checkouts(self, event_type: str) -> None:
        event = to_payment_event(stripe_event(event_type, checkout_session(payment_intent=None)))

        assert event.type is PaymentEventType.PAYMENT_FAILED
        assert event.payment_reference == "cs_test_abc"

    @pytest.mark.unit
    def test_charge_refunded_uses_latest_refund(self) -> None:
        charge = {
            "id": "ch_1",
            "payment_intent": "pi_abc",
            "amount_refunded": 5000,
            "currency": "usd",
            "refunds": {
                "data": [
                    {"id": "re_old", "created": 100},
                    {"id": "re_new", "created": 200},
                ]
            },
        }

        event = to_payment_event(stripe_event("charge.refunded", charge))

        assert event.type is PaymentEventType.REFUND_ISSUED
        assert event.payment_reference == "pi_abc"
        assert event.refund_reference == "re_new"
        assert event.amount_cents == 5000

    @pytest.mark.unit
    def test_charge_refunded_without_payment_intent(self) -> None:
        charge = {"id": "ch_1", "payment_intent": None, "amount_refunded": 5000}

        assert to_payment_event(stripe_event("charge.refunded", charge)) is None

    @pytest.mark.unit
    def test_bad_metadata_is_dropped(self) -> None:
        session = checkout_session(
            metadata={"workshop_id": "one", "enrollment_id": "not-a-uuid"},
            customer_details=None,
            customer_email=None,
        )

        event = to_payment_event(stripe_event("checkout.session.completed", session))

        assert event.workshop_id is None
        assert event.enrollment_id is None
        assert event.customer is None

    @pytest.mark.unit
    def test_event_id_is_kept(self) -> None:
        event_id = f"evt_{uuid4().hex}"

        event = to_payment_event(
            stripe_event("checkout.session.completed", checkout_session(), event_id=event_id)
        )

        assert event.event_id == event_id
