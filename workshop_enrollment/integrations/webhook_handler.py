"""
Stripe webhook ingress.

Verifies the Stripe-Signature header and translates Stripe events into
provider-neutral PaymentEvents for the admission core. Deduplication and
state changes happen in PaymentEventProcessor.
"""
import json
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

import stripe
import structlog

from workshop_enrollment.domain import Customer, EventResult, PaymentEvent, PaymentEventType

logger = structlog.get_logger(__name__)

PAID_SESSION_STATUSES = ("paid", "no_payment_required")


class WebhookError(Exception):
    """Raised when a webhook payload cannot be trusted or parsed."""

    pass


def _metadata_uuid(metadata: Dict[str, Any], key: str) -> Optional[UUID]:
    value = metadata.get(key)
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _metadata_int(metadata: Dict[str, Any], key: str) -> Optional[int]:
    value = metadata.get(key)
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _session_customer(session: Dict[str, Any]) -> Optional[Customer]:
    details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    email = details.get("email") or session.get("customer_email")
    if not email:
        return None
    try:
        return Customer(
            name=details.get("name") or metadata.get("customer_name") or email,
            email=email,
            phone=details.get("phone") or metadata.get("customer_phone") or "",
        )
    except ValueError:
        return None


def _checkout_event(
    event_id: str, event_type: PaymentEventType, session: Dict[str, Any]
) -> PaymentEvent:
    metadata = dict(session.get("metadata") or {})
    currency = session.get("currency")
    return PaymentEvent(
        event_id=event_id,
        type=event_type,
        payment_reference=session["id"],
        amount_cents=session.get("amount_total"),
        currency=currency.upper() if currency else None,
        payment_intent_reference=session.get("payment_intent"),
        workshop_id=_metadata_int(metadata, "workshop_id"),
        pricing_option=metadata.get("pricing_option") or None,
        customer=_session_customer(session),
        enrollment_id=_metadata_uuid(metadata, "enrollment_id"),
        metadata=metadata,
    )


def _latest_refund_id(charge: Dict[str, Any]) -> Optional[str]:
    refunds = (charge.get("refunds") or {}).get("data") or []
    if not refunds:
        return None
    latest = max(refunds, key=lambda refund: refund.get("created") or 0)
    return latest.get("id")


def to_payment_event(stripe_event: Dict[str, Any]) -> Optional[PaymentEvent]:
    """
    Translate a Stripe event into a PaymentEvent.

    Args:
        stripe_event: Decoded Stripe event

    Returns:
        The PaymentEvent, or None for event types the admission core ignores
    """
    event_id = stripe_event["id"]
    event_type = stripe_event["type"]
    obj = stripe_event["data"]["object"]

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") not in PAID_SESSION_STATUSES:
            # Delayed payment methods settle later via async_payment_succeeded
            return None
        return _checkout_event(event_id, PaymentEventType.CHECKOUT_COMPLETED, obj)

    if event_type == "checkout.session.async_payment_succeeded":
        return _checkout_event(event_id, PaymentEventType.CHECKOUT_COMPLETED, obj)

    if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
        return _checkout_event(event_id, PaymentEventType.PAYMENT_FAILED, obj)

    if event_type == "charge.refunded":
        payment_intent = obj.get("payment_intent")
        if not payment_intent:
            logger.warning("charge_refunded_no_payment_intent", charge_id=obj.get("id"))
            return None
        currency = obj.get("currency")
        return PaymentEvent(
            event_id=event_id,
            type=PaymentEventType.REFUND_ISSUED,
            payment_reference=payment_intent,
            amount_cents=obj.get("amount_refunded"),
            currency=currency.upper() if currency else None,
            payment_intent_reference=payment_intent,
            refund_reference=_latest_refund_id(obj),
            metadata=dict(obj.get("metadata") or {}),
        )

    return None


class WebhookHandler:
    """
    Handles Stripe webhook deliveries.

    Features:
    - Signature verification using the Stripe webhook secret
    - Translation of Stripe event types into PaymentEvents
    - Dispatch to the admission core
    """

    def __init__(
        self,
        webhook_secret: str,
        on_event: Callable[[PaymentEvent], Awaitable[EventResult]],
        tolerance_seconds: int = 300,
    ):
        """
        Initialize webhook handler.

        Args:
            webhook_secret: Stripe webhook signing secret
            on_event: Coroutine function applying a PaymentEvent
            tolerance_seconds: Maximum accepted signature age
        """
        self.webhook_secret = webhook_secret
        self.on_event = on_event
        self.tolerance_seconds = tolerance_seconds

        logger.info("webhook_handler_initialized")

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Decoded Stripe event

        Raises:
            WebhookError: If signature verification fails or the body is not an event
        """
        if not signature:
            logger.error("webhook_signature_missing")
            raise WebhookError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError("Webhook payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {str(e)}") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError("Webhook payload is not valid JSON") from e

        if (
            not isinstance(event, dict)
            or "id" not in event
            or "type" not in event
            or not isinstance(event.get("data"), dict)
            or "object" not in event["data"]
        ):
            logger.error("webhook_payload_invalid", error="missing event fields")
            raise WebhookError("Webhook payload is not a Stripe event")

        logger.info(
            "webhook_signature_verified",
            event_id=event["id"],
            event_type=event["type"],
        )
        return event

    async def handle(self, payload: bytes, signature: Optional[str]) -> Optional[EventResult]:
        """
        Verify, translate and apply one webhook delivery.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            The processing result, or None if the event type is ignored

        Raises:
            WebhookError: If the delivery fails verification
        """
        stripe_event = self.verify_signature(payload, signature)
        payment_event = to_payment_event(stripe_event)
        if payment_event is None:
            logger.info(
                "webhook_event_ignored",
                event_id=stripe_event["id"],
                event_type=stripe_event["type"],
            )
            return None
        return await self.on_event(payment_event)
