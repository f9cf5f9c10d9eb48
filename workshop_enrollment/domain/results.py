"""
Typed outcomes of admission, claim, event and refund operations.

Capacity, claim and refund-guard failures are expected outcomes. They are
returned to the caller as values and never raised.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
from uuid import UUID

from workshop_enrollment.domain.errors import ErrorCode
from workshop_enrollment.domain.models import Enrollment, WaitlistEntry


@dataclass(frozen=True)
class Unlimited:
    """Remaining seats of a workshop without a capacity limit."""

    def __str__(self) -> str:
        return "unlimited"


UNLIMITED = Unlimited()


@dataclass(frozen=True)
class Reserved:
    """A seat was reserved; reservation_id becomes the enrollment id."""

    workshop_id: int
    reservation_id: UUID
    remaining: Union[int, Unlimited]


@dataclass(frozen=True)
class NoCapacity:
    """All seats are held by pending or completed enrollments."""

    workshop_id: int
    capacity: int

    code = ErrorCode.NO_CAPACITY


SeatReservation = Union[Reserved, NoCapacity]


class ClaimOutcome(str, Enum):
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    INVALID = "invalid"
    ALREADY_CLAIMED = "already_claimed"
    REQUEUED = "requeued"

    @property
    def code(self) -> Optional[ErrorCode]:
        return {
            ClaimOutcome.EXPIRED: ErrorCode.CLAIM_EXPIRED,
            ClaimOutcome.INVALID: ErrorCode.CLAIM_INVALID,
            ClaimOutcome.ALREADY_CLAIMED: ErrorCode.CLAIM_ALREADY_USED,
            ClaimOutcome.REQUEUED: ErrorCode.CLAIM_REQUEUED,
        }.get(self)


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    entry: Optional[WaitlistEntry] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is ClaimOutcome.ACCEPTED


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE_IGNORED = "duplicate_ignored"
    NO_MATCHING_ENROLLMENT = "no_matching_enrollment"
    ILLEGAL_TRANSITION = "illegal_transition"

    @property
    def code(self) -> Optional[ErrorCode]:
        return {
            EventOutcome.DUPLICATE_IGNORED: ErrorCode.DUPLICATE_EVENT,
            EventOutcome.NO_MATCHING_ENROLLMENT: ErrorCode.NO_MATCHING_ENROLLMENT,
            EventOutcome.ILLEGAL_TRANSITION: ErrorCode.ILLEGAL_TRANSITION,
        }.get(self)

    @property
    def acknowledged(self) -> bool:
        """Whether the transport should treat the delivery as accepted (2xx)."""
        return self in (EventOutcome.APPLIED, EventOutcome.DUPLICATE_IGNORED)


@dataclass(frozen=True)
class EventResult:
    outcome: EventOutcome
    event_id: str
    enrollment: Optional[Enrollment] = None
    message: Optional[str] = None


class RefundOutcome(str, Enum):
    SUCCESS = "success"
    ALREADY_REFUNDED = "already_refunded"
    NO_PAYMENT_RECORD = "no_payment_record"
    INVALID_AMOUNT = "invalid_amount"
    PROVIDER_ERROR = "provider_error"

    @property
    def code(self) -> Optional[ErrorCode]:
        return {
            RefundOutcome.ALREADY_REFUNDED: ErrorCode.ALREADY_REFUNDED,
            RefundOutcome.NO_PAYMENT_RECORD: ErrorCode.NO_PAYMENT_RECORD,
            RefundOutcome.INVALID_AMOUNT: ErrorCode.INVALID_AMOUNT,
            RefundOutcome.PROVIDER_ERROR: ErrorCode.PROVIDER_ERROR,
        }.get(self)


@dataclass(frozen=True)
class RefundResult:
    outcome: RefundOutcome
    enrollment_id: Optional[UUID] = None
    refund_reference: Optional[str] = None
    enrollment: Optional[Enrollment] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is RefundOutcome.SUCCESS


@dataclass(frozen=True)
class CheckoutHandle:
    """Where the customer pays; reference is the provider's checkout id."""

    reference: str
    url: str


class EnrollmentDecision(str, Enum):
    RESERVED = "reserved"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class EnrollmentResult:
    decision: EnrollmentDecision
    workshop_id: int
    enrollment: Optional[Enrollment] = None
    checkout: Optional[CheckoutHandle] = None
    waitlist_entry: Optional[WaitlistEntry] = None
    reason: Optional[ErrorCode] = None

    @property
    def position(self) -> Optional[int]:
        return self.waitlist_entry.position if self.waitlist_entry else None


@dataclass(frozen=True)
class ClaimLinkResult:
    """Outcome of following a waitlist claim link."""

    outcome: ClaimOutcome
    workshop_id: int
    entry: Optional[WaitlistEntry] = None
    enrollment: Optional[Enrollment] = None
    checkout: Optional[CheckoutHandle] = None
    can_rejoin: bool = False


@dataclass(frozen=True)
class Availability:
    """Lock-free snapshot of a workshop's seats and waitlist."""

    workshop_id: int
    capacity: int
    remaining: Union[int, Unlimited]
    waitlist_enabled: bool
    waiting: int
