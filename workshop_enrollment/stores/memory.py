"""In-memory store used by tests and single-process deployments."""

import asyncio
import secrets
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from workshop_enrollment.domain import (
    Customer,
    DuplicateEnrollmentError,
    Enrollment,
    EnrollmentStatus,
    RefundRecord,
    WaitlistEntry,
    WaitlistStatus,
    Workshop,
    token_digest,
)
from workshop_enrollment.stores.interfaces import EnrollmentStore


class InMemoryEnrollmentStore(EnrollmentStore):
    """
    Dict-backed EnrollmentStore.

    Every method yields to the event loop once before touching state so
    concurrent callers interleave the way they would against a database.
    """

    def __init__(self) -> None:
        self._workshops: Dict[int, Workshop] = {}
        self._enrollments: Dict[UUID, Enrollment] = {}
        self._waitlist: Dict[UUID, WaitlistEntry] = {}
        self._events: List[Tuple[UUID, str, Dict[str, Any], Optional[str]]] = []

    @property
    def events(self) -> List[Tuple[UUID, str, Dict[str, Any], Optional[str]]]:
        return list(self._events)

    async def load_workshop(self, workshop_id: int) -> Optional[Workshop]:
        await asyncio.sleep(0)
        return self._workshops.get(workshop_id)

    async def save_workshop(self, workshop: Workshop) -> Workshop:
        await asyncio.sleep(0)
        self._workshops[workshop.id] = workshop
        return workshop

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        await asyncio.sleep(0)
        for existing in self._enrollments.values():
            if existing.id == enrollment.id or (
                existing.workshop_id == enrollment.workshop_id
                and existing.external_payment_reference == enrollment.external_payment_reference
            ):
                raise DuplicateEnrollmentError(
                    enrollment.workshop_id, enrollment.external_payment_reference
                )
        self._enrollments[enrollment.id] = enrollment
        return enrollment

    async def get_enrollment(self, enrollment_id: UUID) -> Optional[Enrollment]:
        await asyncio.sleep(0)
        return self._enrollments.get(enrollment_id)

    async def find_enrollment_by_reference(self, reference: str) -> Optional[Enrollment]:
        await asyncio.sleep(0)
        for enrollment in self._enrollments.values():
            if reference in (
                enrollment.external_payment_reference,
                enrollment.payment_intent_reference,
            ):
                return enrollment
        return None

    async def update_enrollment_status(
        self,
        enrollment_id: UUID,
        status: EnrollmentStatus,
        expected_status: Optional[EnrollmentStatus] = None,
        payment_intent_reference: Optional[str] = None,
        refund: Optional[RefundRecord] = None,
    ) -> Optional[Enrollment]:
        await asyncio.sleep(0)
        current = self._enrollments.get(enrollment_id)
        if current is None:
            return None
        if expected_status is not None and current.status is not expected_status:
            return None

        changes: Dict[str, Any] = {"status": status, "updated_at": _now_of(refund)}
        if payment_intent_reference:
            changes["payment_intent_reference"] = payment_intent_reference
        if refund is not None:
            changes.update(
                refund_reference=refund.reference,
                refund_amount_cents=refund.amount_cents,
                refund_reason=refund.reason,
                refunded_at=refund.refunded_at,
            )
        updated = replace(current, **changes)
        self._enrollments[enrollment_id] = updated
        return updated

    async def attach_payment_reference(
        self, enrollment_id: UUID, external_payment_reference: str
    ) -> Optional[Enrollment]:
        await asyncio.sleep(0)
        current = self._enrollments.get(enrollment_id)
        if current is None:
            return None
        for existing in self._enrollments.values():
            if (
                existing.id != enrollment_id
                and existing.workshop_id == current.workshop_id
                and existing.external_payment_reference == external_payment_reference
            ):
                raise DuplicateEnrollmentError(current.workshop_id, external_payment_reference)
        updated = replace(
            current,
            external_payment_reference=external_payment_reference,
            updated_at=_now_of(None),
        )
        self._enrollments[enrollment_id] = updated
        return updated

    async def count_active_enrollments(self, workshop_id: int) -> int:
        await asyncio.sleep(0)
        return sum(
            1
            for enrollment in self._enrollments.values()
            if enrollment.workshop_id == workshop_id and enrollment.status.holds_seat
        )

    async def record_enrollment_event(
        self,
        enrollment_id: UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        self._events.append((enrollment_id, event_type, dict(event_data), correlation_id))

    async def append_waitlist_entry(
        self, workshop_id: int, customer: Customer, now: datetime
    ) -> WaitlistEntry:
        await asyncio.sleep(0)
        positions = [e.position for e in self._waitlist.values() if e.workshop_id == workshop_id]
        entry = WaitlistEntry(
            id=uuid4(),
            workshop_id=workshop_id,
            customer=customer,
            position=max(positions, default=0) + 1,
            status=WaitlistStatus.WAITING,
            created_at=now,
            updated_at=now,
        )
        self._waitlist[entry.id] = entry
        return entry

    async def get_waitlist_entry(self, entry_id: UUID) -> Optional[WaitlistEntry]:
        await asyncio.sleep(0)
        return self._waitlist.get(entry_id)

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
        await asyncio.sleep(0)
        current = self._waitlist.get(entry_id)
        if current is None:
            return None
        if expected_status is not None and current.status is not expected_status:
            return None

        changes: Dict[str, Any] = {
            "status": status,
            "claim_token": claim_token,
            "claim_expires_at": claim_expires_at,
            "updated_at": now,
        }
        if status is WaitlistStatus.CLAIM_OFFERED:
            changes["notified_at"] = now
        if enrollment_id is not None:
            changes["enrollment_id"] = enrollment_id
        if spent_token_digest is not None:
            changes["spent_token_digest"] = spent_token_digest
        updated = replace(current, **changes)
        self._waitlist[entry_id] = updated
        return updated

    async def list_waitlist(
        self, workshop_id: int, status: Optional[WaitlistStatus] = None
    ) -> List[WaitlistEntry]:
        await asyncio.sleep(0)
        entries = [
            e
            for e in self._waitlist.values()
            if e.workshop_id == workshop_id and (status is None or e.status is status)
        ]
        return sorted(entries, key=lambda e: e.position)

    async def find_waitlist_entry_by_token(self, token: str) -> Optional[WaitlistEntry]:
        await asyncio.sleep(0)
        digest = token_digest(token)
        for entry in self._waitlist.values():
            if entry.claim_token and secrets.compare_digest(entry.claim_token, token):
                return entry
            if entry.spent_token_digest and secrets.compare_digest(
                entry.spent_token_digest, digest
            ):
                return entry
        return None

    async def find_active_waitlist_entry(
        self, workshop_id: int, email: str
    ) -> Optional[WaitlistEntry]:
        await asyncio.sleep(0)
        email = email.strip().lower()
        for entry in sorted(self._waitlist.values(), key=lambda e: e.position):
            if (
                entry.workshop_id == workshop_id
                and entry.customer.email == email
                and entry.status.is_active
            ):
                return entry
        return None

    async def list_expired_offers(self, now: datetime) -> List[WaitlistEntry]:
        await asyncio.sleep(0)
        expired = [
            e
            for e in self._waitlist.values()
            if e.status is WaitlistStatus.CLAIM_OFFERED and e.is_claim_expired(now)
        ]
        return sorted(expired, key=lambda e: (e.workshop_id, e.position))

    async def list_waitlisted_workshops(self) -> List[int]:
        await asyncio.sleep(0)
        return sorted(
            {e.workshop_id for e in self._waitlist.values() if e.status is WaitlistStatus.WAITING}
        )


def _now_of(refund: Optional[RefundRecord]) -> datetime:
    return refund.refunded_at if refund is not None else datetime.now(timezone.utc)
