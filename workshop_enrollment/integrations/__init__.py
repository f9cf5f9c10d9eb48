"""External integrations package."""
from .provider import PaymentProvider
from .stripe_client import CircuitBreaker, StripeClient, StripeError, StripeErrorType
from .webhook_handler import WebhookError, WebhookHandler, to_payment_event

__all__ = [
    "CircuitBreaker",
    "PaymentProvider",
    "StripeClient",
    "StripeError",
    "StripeErrorType",
    "WebhookError",
    "WebhookHandler",
    "to_payment_event",
]
