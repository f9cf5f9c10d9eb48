"""Domain models representing persisted admission state.

These are pure domain objects. SQLAlchemy records live in
workshop_enrollment/database/models.py (persistence layer).
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

UNLIMITED_CAPACITY = 0


def token_digest(token: str) -> str:
    """SHA-256 hex digest under which a spent claim token is remembered."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class EnrollmentStatus(str, Enum):
    """
    Enrollment lifecycle states.

    State machine:
    PENDING --(checkout_completed)--> COMPLETED --(refund_issued)--> REFUNDED
       |
       +------(payment_failed)------> FAILED
    """

    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def holds_seat(self) -> bool:
        return self in (EnrollmentStatus.PENDING, EnrollmentStatus.COMPLETED)


class WaitlistStatus(str, Enum):
    """Waitlist entry lifecycle states."""

    WAITING = "waiting"
    CLAIM_OFFERED = "claim_offered"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (WaitlistStatus.WAITING, WaitlistStatus.CLAIM_OFFERED)


class PaymentEventType(str, Enum):
    """Provider-neutral payment event types."""

    CHECKOUT_COMPLETED = "checkout_completed"
    REFUND_ISSUED = "refund_issued"
    PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class Customer:
    """Identity of the person enrolling or waiting."""

    name: str
    email: str
    phone: str = ""

    def __post_init__(self) -> None:
        if "@" not in self.email:
            raise ValueError("Customer email must be a valid address")
        object.__setattr__(self, "email", self.email.strip().lower())


@dataclass(frozen=True)
class Workshop:
    """
    Domain representation of a Workshop.

    A capacity of 0 means unlimited seats. Prices are in the smallest
    currency unit; pricing_options maps an option id to its price.
    """

    id: int
    title: str
    capacity: int = UNLIMITED_CAPACITY
    waitlist_enabled: bool = False
    price_cents: int = 0
    currency: str = "USD"
    pricing_options: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.capacity < 0:
            raise ValueError("Capacity cannot be negative")

    @property
    def is_unlimited(self) -> bool:
        return self.capacity == UNLIMITED_CAPACITY

    def price_for(self, pricing_option: Optional[str]) -> Optional[int]:
        """Return the price for a pricing option, or None if the option is not offered."""
        if pricing_option:
            return self.pricing_options.get(pricing_option)
        if self.pricing_options:
            return None
        return self.price_cents


@dataclass(frozen=True)
class RefundRecord:
    """Details written together with the refunded status."""

    reference: str
    amount_cents: int
    reason: Optional[str]
    refunded_at: datetime


@dataclass(frozen=True)
class Enrollment:
    """
    Domain representation of an Enrollment.

    Invariants:
    - at most one enrollment per (workshop_id, external_payment_reference)
    - refund_reference is set if and only if status is REFUNDED, and never changes
    """

    id: UUID
    workshop_id: int
    customer: Customer
    amount_cents: int
    currency: str
    pricing_option: Optional[str]
    status: EnrollmentStatus
    external_payment_reference: str
    created_at: datetime
    updated_at: datetime
    payment_intent_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    waitlist_entry_id: Optional[UUID] = None

    @property
    def provider_payment_reference(self) -> Optional[str]:
        """Reference the provider accepts for refunds."""
        return self.payment_intent_reference


@dataclass(frozen=True)
class WaitlistEntry:
    """
    Domain representation of a waitlist entry.

    Positions are assigned once, increase monotonically per workshop and are
    never renumbered. claim_token is only set while the entry is
    CLAIM_OFFERED; when the offer ends the token is cleared and its digest is
    kept in spent_token_digest so a late attempt can still be answered with
    Expired or AlreadyClaimed.
    """

    id: UUID
    workshop_id: int
    customer: Customer
    position: int
    status: WaitlistStatus
    created_at: datetime
    updated_at: datetime
    claim_token: Optional[str] = None
    claim_expires_at: Optional[datetime] = None
    enrollment_id: Optional[UUID] = None
    notified_at: Optional[datetime] = None
    spent_token_digest: Optional[str] = None

    def is_claim_expired(self, now: datetime) -> bool:
        return self.claim_expires_at is not None and self.claim_expires_at <= now


@dataclass(frozen=True)
class PaymentEvent:
    """
    Provider-neutral payment event.

    Ephemeral: consulted once for deduplication and never persisted beyond
    the dedup retention window. checkout_completed events carry enough of the
    checkout (workshop, customer, amount) to create a missing enrollment.
    """

    event_id: str
    type: PaymentEventType
    payment_reference: str
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    payment_intent_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    workshop_id: Optional[int] = None
    pricing_option: Optional[str] = None
    customer: Optional[Customer] = None
    enrollment_id: Optional[UUID] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
