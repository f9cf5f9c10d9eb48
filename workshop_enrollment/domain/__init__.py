from workshop_enrollment.domain.errors import (
    CheckoutUnavailableError,
    DomainError,
    DuplicateEnrollmentError,
    EnrollmentNotFoundError,
    ErrorCode,
    InvalidPricingOptionError,
    LockUnavailableError,
    WaitlistEntryNotFoundError,
    WorkshopNotFoundError,
)
from workshop_enrollment.domain.models import (
    UNLIMITED_CAPACITY,
    token_digest,
    Customer,
    Enrollment,
    EnrollmentStatus,
    PaymentEvent,
    PaymentEventType,
    RefundRecord,
    WaitlistEntry,
    WaitlistStatus,
    Workshop,
)
from workshop_enrollment.domain.results import (
    UNLIMITED,
    Availability,
    CheckoutHandle,
    ClaimLinkResult,
    ClaimOutcome,
    ClaimResult,
    EnrollmentDecision,
    EnrollmentResult,
    EventOutcome,
    EventResult,
    NoCapacity,
    RefundOutcome,
    RefundResult,
    Reserved,
    SeatReservation,
    Unlimited,
)

__all__ = [
    "UNLIMITED",
    "UNLIMITED_CAPACITY",
    "Availability",
    "CheckoutHandle",
    "CheckoutUnavailableError",
    "ClaimLinkResult",
    "ClaimOutcome",
    "ClaimResult",
    "Customer",
    "DomainError",
    "DuplicateEnrollmentError",
    "Enrollment",
    "EnrollmentDecision",
    "EnrollmentNotFoundError",
    "EnrollmentResult",
    "EnrollmentStatus",
    "ErrorCode",
    "EventOutcome",
    "EventResult",
    "InvalidPricingOptionError",
    "LockUnavailableError",
    "NoCapacity",
    "PaymentEvent",
    "PaymentEventType",
    "RefundOutcome",
    "RefundRecord",
    "RefundResult",
    "Reserved",
    "SeatReservation",
    "Unlimited",
    "WaitlistEntry",
    "WaitlistEntryNotFoundError",
    "WaitlistStatus",
    "Workshop",
    "token_digest",
]
