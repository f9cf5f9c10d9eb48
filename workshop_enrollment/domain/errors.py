"""Domain error codes for workshop enrollment."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    # Expected outcomes, returned as results
    NO_CAPACITY = "NO_CAPACITY"
    WORKSHOP_FULL = "WORKSHOP_FULL"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    NO_MATCHING_ENROLLMENT = "NO_MATCHING_ENROLLMENT"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    NO_PAYMENT_RECORD = "NO_PAYMENT_RECORD"
    CLAIM_EXPIRED = "CLAIM_EXPIRED"
    CLAIM_INVALID = "CLAIM_INVALID"
    CLAIM_ALREADY_USED = "CLAIM_ALREADY_USED"
    CLAIM_REQUEUED = "CLAIM_REQUEUED"
    PROVIDER_ERROR = "PROVIDER_ERROR"

    # Raised as exceptions
    WORKSHOP_NOT_FOUND = "WORKSHOP_NOT_FOUND"
    ENROLLMENT_NOT_FOUND = "ENROLLMENT_NOT_FOUND"
    WAITLIST_ENTRY_NOT_FOUND = "WAITLIST_ENTRY_NOT_FOUND"
    INVALID_PRICING_OPTION = "INVALID_PRICING_OPTION"
    DUPLICATE_ENROLLMENT = "DUPLICATE_ENROLLMENT"
    CHECKOUT_UNAVAILABLE = "CHECKOUT_UNAVAILABLE"
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class WorkshopNotFoundError(DomainError):
    """Raised when a workshop does not exist."""

    def __init__(self, workshop_id: int) -> None:
        super().__init__(
            code=ErrorCode.WORKSHOP_NOT_FOUND,
            message="Workshop not found",
        )
        self.workshop_id = workshop_id


class EnrollmentNotFoundError(DomainError):
    """Raised when an enrollment does not exist."""

    def __init__(self, enrollment_id: str) -> None:
        super().__init__(
            code=ErrorCode.ENROLLMENT_NOT_FOUND,
            message="Enrollment not found",
        )
        self.enrollment_id = enrollment_id


class WaitlistEntryNotFoundError(DomainError):
    """Raised when a waitlist entry does not exist."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(
            code=ErrorCode.WAITLIST_ENTRY_NOT_FOUND,
            message="Waitlist entry not found",
        )
        self.entry_id = entry_id


class InvalidPricingOptionError(DomainError):
    """Raised when a pricing option is not offered by the workshop."""

    def __init__(self, pricing_option: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_PRICING_OPTION,
            message="Pricing option is not available for this workshop",
        )
        self.pricing_option = pricing_option


class DuplicateEnrollmentError(DomainError):
    """Raised when an enrollment already exists for a workshop/payment reference pair."""

    def __init__(self, workshop_id: int, payment_reference: str) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_ENROLLMENT,
            message="An enrollment already exists for this payment",
        )
        self.workshop_id = workshop_id
        self.payment_reference = payment_reference


class CheckoutUnavailableError(DomainError):
    """Raised when the payment provider cannot open a checkout. The seat is released first."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            code=ErrorCode.CHECKOUT_UNAVAILABLE,
            message="Checkout is temporarily unavailable",
        )
        self.detail = detail


class LockUnavailableError(DomainError):
    """Raised when a workshop lock cannot be acquired in time."""

    def __init__(self, key: str) -> None:
        super().__init__(
            code=ErrorCode.LOCK_UNAVAILABLE,
            message="Resource is busy, please retry",
        )
        self.key = key
