"""
Stripe API client with retry logic and comprehensive error handling.

Implements:
- Circuit breaker pattern
- Error classification (transient / permanent / rate limit)
- Exponential backoff for transient checkout-creation errors
- Idempotent checkout sessions and refunds
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar
from uuid import UUID

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from workshop_enrollment.config import Settings, get_settings
from workshop_enrollment.domain import CheckoutHandle, Customer, Workshop
from workshop_enrollment.integrations.provider import PaymentProvider
from workshop_enrollment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not StripeErrorType.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Execute function with circuit breaker protection.

        Args:
            func: Function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

        try:
            result = func(*args, **kwargs)
        except stripe.CardError:
            # The customer's card, not Stripe, failed
            self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeClient(PaymentProvider):
    """
    PaymentProvider backed by Stripe Checkout and the Refunds API.

    Stripe's SDK is synchronous; calls run in a worker thread so the event
    loop keeps serving other workshops meanwhile.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Stripe client.

        Args:
            settings: Application settings (defaults to cached settings)
            circuit_breaker: Optional circuit breaker instance
        """
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _to_stripe_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        started = time.perf_counter()
        try:
            result = await asyncio.to_thread(self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            metrics.record_stripe_api_call(operation, "error", time.perf_counter() - started)
            raise self._to_stripe_error(e) from e
        except StripeError:
            metrics.record_stripe_api_call(operation, "rejected", time.perf_counter() - started)
            raise
        metrics.record_stripe_api_call(operation, "success", time.perf_counter() - started)
        return result

    def _checkout_urls(self, enrollment_id: UUID) -> Dict[str, str]:
        base = self.settings.public_base_url.rstrip("/")
        return {
            "success_url": f"{base}/enrollments/{enrollment_id}?checkout=success",
            "cancel_url": f"{base}/enrollments/{enrollment_id}?checkout=cancelled",
        }

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_checkout_session(
        self,
        enrollment_id: UUID,
        workshop: Workshop,
        customer: Customer,
        amount_cents: int,
        currency: str,
        pricing_option: Optional[str] = None,
    ) -> CheckoutHandle:
        """
        Create a Stripe Checkout Session for a reserved seat.

        The session metadata carries the workshop, pricing option and
        enrollment id so the completion webhook can be matched (or the
        enrollment rebuilt) without any other state.

        Args:
            enrollment_id: Enrollment the checkout pays for
            workshop: Workshop being booked
            customer: Paying customer
            amount_cents: Amount in the smallest currency unit
            currency: Currency code
            pricing_option: Selected pricing option, if any

        Returns:
            CheckoutHandle: Session id and hosted checkout URL

        Raises:
            StripeError: If session creation fails
        """
        metadata = {
            "workshop_id": str(workshop.id),
            "enrollment_id": str(enrollment_id),
            "pricing_option": pricing_option or "",
            "customer_name": customer.name,
            "customer_phone": customer.phone,
        }
        logger.info(
            "creating_checkout_session",
            workshop_id=workshop.id,
            enrollment_id=str(enrollment_id),
            amount_cents=amount_cents,
            currency=currency,
        )

        def _create() -> stripe.checkout.Session:
            return stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount_cents,
                            "product_data": {"name": workshop.title},
                        },
                        "quantity": 1,
                    }
                ],
                customer_email=customer.email,
                client_reference_id=str(enrollment_id),
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                idempotency_key=f"checkout:{enrollment_id}",
                **self._checkout_urls(enrollment_id),
            )

        session = await self._call("create_checkout_session", _create)

        logger.info(
            "checkout_session_created",
            enrollment_id=str(enrollment_id),
            session_id=session.id,
        )
        return CheckoutHandle(reference=session.id, url=session.url)

    async def create_refund(
        self,
        payment_reference: str,
        amount_cents: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Create a refund for a payment.

        Not retried here: the refund caller decides whether to retry.

        Args:
            payment_reference: Stripe PaymentIntent ID
            amount_cents: Amount to refund
            reason: Optional free-text reason (stored as metadata)
            idempotency_key: Optional idempotency key

        Returns:
            str: Stripe refund ID

        Raises:
            StripeError: If refund creation fails
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_reference,
            amount_cents=amount_cents,
        )

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {
                "payment_intent": payment_reference,
                "amount": amount_cents,
                "reason": "requested_by_customer",
            }
            if reason:
                kwargs["metadata"] = {"reason": reason[:500]}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Refund.create(**kwargs)

        refund = await self._call("create_refund", _create_refund)

        logger.info(
            "refund_created",
            refund_id=refund.id,
            status=refund.status,
        )
        return refund.id
