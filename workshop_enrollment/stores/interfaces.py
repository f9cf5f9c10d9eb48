"""Store interfaces (repository pattern).

Stores must be swappable and return domain models. Every mutating method is
a single atomic write; compound admission decisions are serialized by the
per-workshop lock held by the caller, not by the store.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from workshop_enrollment.domain import (
    Customer,
    Enrollment,
    EnrollmentStatus,
    RefundRecord,
    WaitlistEntry,
    WaitlistStatus,
    Workshop,
)


class EnrollmentStore(ABC):
    """Interface for workshop, enrollment and waitlist persistence."""

    # Workshops

    @abstractmethod
    async def load_workshop(self, workshop_id: int) -> Optional[Workshop]:
        """Return the current workshop configuration, or None if not found."""
        ...

    @abstractmethod
    async def save_workshop(self, workshop: Workshop) -> Workshop:
        """Insert or replace a workshop's configuration."""
        ...

    # Enrollments

    @abstractmethod
    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        """
        Insert a new enrollment.

        Raises:
            DuplicateEnrollmentError: If (workshop_id, external_payment_reference) exists
        """
        ...

    @abstractmethod
    async def get_enrollment(self, enrollment_id: UUID) -> Optional[Enrollment]:
        """Return an enrollment by ID, or None if not found."""
        ...

    @abstractmethod
    async def find_enrollment_by_reference(self, reference: str) -> Optional[Enrollment]:
        """Return the enrollment whose checkout or payment-intent reference matches."""
        ...

    @abstractmethod
    async def update_enrollment_status(
        self,
        enrollment_id: UUID,
        status: EnrollmentStatus,
        expected_status: Optional[EnrollmentStatus] = None,
        payment_intent_reference: Optional[str] = None,
        refund: Optional[RefundRecord] = None,
    ) -> Optional[Enrollment]:
        """
        Move an enrollment to a new status.

        When expected_status is given the update only applies if the stored
        status still equals it (compare-and-set). Refund details are written
        in the same update as the refunded status.

        Returns:
            The updated enrollment, or None if the row is missing or the
            expected status did not match.
        """
        ...

    @abstractmethod
    async def attach_payment_reference(
        self, enrollment_id: UUID, external_payment_reference: str
    ) -> Optional[Enrollment]:
        """
        Replace the provisional payment reference once the checkout exists.

        Raises:
            DuplicateEnrollmentError: If the reference is already used in the workshop
        """
        ...

    @abstractmethod
    async def count_active_enrollments(self, workshop_id: int) -> int:
        """Count pending and completed enrollments for a workshop."""
        ...

    @abstractmethod
    async def record_enrollment_event(
        self,
        enrollment_id: UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        """Append an audit record for an enrollment."""
        ...

    # Waitlist

    @abstractmethod
    async def append_waitlist_entry(
        self, workshop_id: int, customer: Customer, now: datetime
    ) -> WaitlistEntry:
        """Append a waiting entry at the next position for the workshop."""
        ...

    @abstractmethod
    async def get_waitlist_entry(self, entry_id: UUID) -> Optional[WaitlistEntry]:
        ...

    @abstractmethod
    async def update_waitlist_entry(
        self,
        entry_id: UUID,
        status: WaitlistStatus,
        now: datetime,
        claim_token: Optional[str] = None,
        claim_expires_at: Optional[datetime] = None,
        enrollment_id: Optional[UUID] = None,
        spent_token_digest: Optional[str] = None,
        expected_status: Optional[WaitlistStatus] = None,
    ) -> Optional[WaitlistEntry]:
        """
        Overwrite an entry's status and claim fields.

        claim_token and claim_expires_at are written as given, so callers
        pass the current values to keep them. enrollment_id and
        spent_token_digest are only written when provided. Returns None if the
        row is missing or expected_status did not match.
        """
        ...

    @abstractmethod
    async def list_waitlist(
        self, workshop_id: int, status: Optional[WaitlistStatus] = None
    ) -> List[WaitlistEntry]:
        """Return entries for a workshop ordered by position ascending."""
        ...

    @abstractmethod
    async def find_waitlist_entry_by_token(self, token: str) -> Optional[WaitlistEntry]:
        """Return the entry holding this token, or whose spent token digest matches it."""
        ...

    @abstractmethod
    async def find_active_waitlist_entry(
        self, workshop_id: int, email: str
    ) -> Optional[WaitlistEntry]:
        """Return a waiting or offered entry for the same email, if any."""
        ...

    @abstractmethod
    async def list_expired_offers(self, now: datetime) -> List[WaitlistEntry]:
        """Return claim_offered entries whose claim window ended at or before now."""
        ...

    @abstractmethod
    async def list_waitlisted_workshops(self) -> List[int]:
        """Return the ids of workshops with at least one waiting entry, ascending."""
        ...
