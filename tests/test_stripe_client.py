"""
Tests for the Stripe client: error classification, retries and the circuit breaker.
"""
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
import stripe
from tenacity import wait_none

from workshop_enrollment.config import Settings
from workshop_enrollment.integrations import (
    CircuitBreaker,
    StripeClient,
    StripeError,
    StripeErrorType,
)

from tests.factories import make_customer, make_workshop


@pytest.fixture
def settings() -> Settings:
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        database_url="sqlite+aiosqlite:///:memory:",
        public_base_url="https://workshops.test/",
    )


@pytest.fixture
def client(settings: Settings) -> StripeClient:
    return StripeClient(settings)


async def create_checkout(client: StripeClient, enrollment_id=None):
    # Same retry policy without the backoff sleeps
    create = StripeClient.create_checkout_session.retry_with(wait=wait_none())
    return await create(
        client,
        enrollment_id or uuid4(),
        make_workshop(),
        make_customer(1),
        15000,
        "USD",
        "standard",
    )


class TestErrorClassification:
    """Stripe exceptions mapped onto retry classes."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.RateLimitError("slow down"), StripeErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("network"), StripeErrorType.TRANSIENT),
            (stripe.APIError("server"), StripeErrorType.TRANSIENT),
            (stripe.InvalidRequestError("bad", "amount"), StripeErrorType.PERMANENT),
            (stripe.AuthenticationError("key"), StripeErrorType.PERMANENT),
            (stripe.CardError("declined", "card", "card_declined"), StripeErrorType.PERMANENT),
        ],
    )
    def test_classify(self, error, expected) -> None:
        assert StripeClient._classify_error(error) is expected

    @pytest.mark.unit
    def test_only_permanent_errors_are_final(self) -> None:
        assert StripeError("x", StripeErrorType.TRANSIENT).retryable
        assert StripeError("x", StripeErrorType.RATE_LIMIT).retryable
        assert not StripeError("x", StripeErrorType.PERMANENT).retryable


class TestCheckoutSession:
    """Checkout Session creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_session_with_metadata(self, client) -> None:
        enrollment_id = uuid4()
        session = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")

        with patch("stripe.checkout.Session.create", return_value=session) as create:
            handle = await create_checkout(client, enrollment_id)

        assert handle.reference == "cs_test_1"
        assert handle.url == "https://checkout.stripe.com/c/cs_test_1"
        kwargs = create.call_args.kwargs
        assert kwargs["idempotency_key"] == f"checkout:{enrollment_id}"
        assert kwargs["client_reference_id"] == str(enrollment_id)
        assert kwargs["customer_email"] == "customer1@example.com"
        assert kwargs["metadata"]["workshop_id"] == "1"
        assert kwargs["metadata"]["enrollment_id"] == str(enrollment_id)
        assert kwargs["metadata"]["pricing_option"] == "standard"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 15000
        assert kwargs["line_items"][0]["price_data"]["currency"] == "usd"
        assert kwargs["success_url"] == (
            f"https://workshops.test/enrollments/{enrollment_id}?checkout=success"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, client) -> None:
        session = MagicMock(id="cs_test_2", url="https://checkout.stripe.com/c/cs_test_2")
        side_effect = [stripe.APIConnectionError("reset"), stripe.APIError("502"), session]

        with patch("stripe.checkout.Session.create", side_effect=side_effect) as create:
            handle = await create_checkout(client)

        assert handle.reference == "cs_test_2"
        assert create.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, client) -> None:
        error = stripe.InvalidRequestError("No such price", "line_items")

        with patch("stripe.checkout.Session.create", side_effect=error) as create:
            with pytest.raises(StripeError) as exc_info:
                await create_checkout(client)

        assert exc_info.value.error_type is StripeErrorType.PERMANENT
        assert exc_info.value.original_error is error
        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, client) -> None:
        with patch(
            "stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("down")
        ) as create:
            with pytest.raises(StripeError):
                await create_checkout(client)

        assert create.call_count == 3


class TestRefund:
    """Refund creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_refund(self, client) -> None:
        refund = MagicMock(id="re_1", status="succeeded")

        with patch("stripe.Refund.create", return_value=refund) as create:
            reference = await client.create_refund(
                "pi_1", 5000, reason="cannot attend", idempotency_key="refund:abc"
            )

        assert reference == "re_1"
        create.assert_called_once_with(
            payment_intent="pi_1",
            amount=5000,
            reason="requested_by_customer",
            metadata={"reason": "cannot attend"},
            idempotency_key="refund:abc",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_errors_are_not_retried(self, client) -> None:
        with patch(
            "stripe.Refund.create", side_effect=stripe.APIConnectionError("down")
        ) as create:
            with pytest.raises(StripeError) as exc_info:
                await client.create_refund("pi_1", 5000)

        assert exc_info.value.error_type is StripeErrorType.TRANSIENT
        assert create.call_count == 1


class TestCircuitBreaker:
    """Open, half-open and closed transitions."""

    @staticmethod
    def failing() -> None:
        raise stripe.APIConnectionError("down")

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, timeout=60)
        for _ in range(3):
            with pytest.raises(stripe.APIConnectionError):
                breaker.call(self.failing)

        assert breaker.state == "open"
        called = MagicMock()
        with pytest.raises(StripeError, match="Circuit breaker is open"):
            breaker.call(called)
        called.assert_not_called()

    @pytest.mark.unit
    def test_card_errors_do_not_open_circuit(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2)

        def declined() -> None:
            raise stripe.CardError("declined", "card", "card_declined")

        for _ in range(3):
            with pytest.raises(stripe.CardError):
                breaker.call(declined)

        assert breaker.state == "closed"

    @pytest.mark.unit
    def test_half_open_then_closed(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=30, success_threshold=2)
        with pytest.raises(stripe.APIConnectionError):
            breaker.call(self.failing)
        breaker.last_failure_time -= 31

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "closed"
