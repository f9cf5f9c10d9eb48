"""Payment provider interface consumed by the admission core."""
from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from workshop_enrollment.domain import CheckoutHandle, Customer, Workshop


class PaymentProvider(ABC):
    """
    Checkout creation and refunds.

    Implementations raise ``StripeError`` (integrations.stripe_client) on
    provider failure.
    """

    @abstractmethod
    async def create_checkout_session(
        self,
        enrollment_id: UUID,
        workshop: Workshop,
        customer: Customer,
        amount_cents: int,
        currency: str,
        pricing_option: Optional[str] = None,
    ) -> CheckoutHandle:
        """Open a hosted checkout for a reserved seat."""
        ...

    @abstractmethod
    async def create_refund(
        self,
        payment_reference: str,
        amount_cents: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Refund a captured payment.

        Returns:
            str: The provider's refund reference
        """
        ...
