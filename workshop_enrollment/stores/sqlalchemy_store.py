"""
SQLAlchemy-backed EnrollmentStore.

Each method runs in its own short transaction. Status changes are issued as
conditional UPDATEs (compare-and-set on the current status) so a lost race
shows up as "no row changed" instead of a silent overwrite.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_enrollment.database.models import (
    EnrollmentEventRecord,
    EnrollmentRecord,
    WaitlistEntryRecord,
    WorkshopRecord,
)
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

logger = structlog.get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_workshop(record: WorkshopRecord) -> Workshop:
    return Workshop(
        id=record.id,
        title=record.title,
        capacity=record.capacity,
        waitlist_enabled=record.waitlist_enabled,
        price_cents=record.price_cents,
        currency=record.currency,
        pricing_options=dict(record.pricing_options or {}),
    )


def _to_enrollment(record: EnrollmentRecord) -> Enrollment:
    return Enrollment(
        id=record.id,
        workshop_id=record.workshop_id,
        customer=Customer(
            name=record.customer_name,
            email=record.customer_email,
            phone=record.customer_phone,
        ),
        amount_cents=record.amount_cents,
        currency=record.currency,
        pricing_option=record.pricing_option,
        status=EnrollmentStatus(record.status),
        external_payment_reference=record.external_payment_reference,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        payment_intent_reference=record.payment_intent_reference,
        refund_reference=record.refund_reference,
        refund_amount_cents=record.refund_amount_cents,
        refund_reason=record.refund_reason,
        refunded_at=_aware(record.refunded_at),
        waitlist_entry_id=record.waitlist_entry_id,
    )


def _to_waitlist_entry(record: WaitlistEntryRecord) -> WaitlistEntry:
    return WaitlistEntry(
        id=record.id,
        workshop_id=record.workshop_id,
        customer=Customer(
            name=record.customer_name,
            email=record.customer_email,
            phone=record.customer_phone,
        ),
        position=record.position,
        status=WaitlistStatus(record.status),
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        claim_token=record.claim_token,
        claim_expires_at=_aware(record.claim_expires_at),
        enrollment_id=record.enrollment_id,
        notified_at=_aware(record.notified_at),
        spent_token_digest=record.spent_token_digest,
    )


class SqlAlchemyEnrollmentStore(EnrollmentStore):
    """EnrollmentStore on top of an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the store.

        Args:
            session_factory: Factory producing AsyncSession instances
        """
        self.session_factory = session_factory

    async def load_workshop(self, workshop_id: int) -> Optional[Workshop]:
        async with self.session_factory() as db:
            record = await db.get(WorkshopRecord, workshop_id)
            return _to_workshop(record) if record else None

    async def save_workshop(self, workshop: Workshop) -> Workshop:
        async with self.session_factory() as db:
            record = await db.get(WorkshopRecord, workshop.id)
            if record is None:
                record = WorkshopRecord(id=workshop.id)
                db.add(record)
            record.title = workshop.title
            record.capacity = workshop.capacity
            record.waitlist_enabled = workshop.waitlist_enabled
            record.price_cents = workshop.price_cents
            record.currency = workshop.currency
            record.pricing_options = dict(workshop.pricing_options)
            await db.commit()
            return _to_workshop(record)

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        record = EnrollmentRecord(
            id=enrollment.id,
            workshop_id=enrollment.workshop_id,
            customer_name=enrollment.customer.name,
            customer_email=enrollment.customer.email,
            customer_phone=enrollment.customer.phone,
            amount_cents=enrollment.amount_cents,
            currency=enrollment.currency,
            pricing_option=enrollment.pricing_option,
            status=enrollment.status.value,
            external_payment_reference=enrollment.external_payment_reference,
            payment_intent_reference=enrollment.payment_intent_reference,
            waitlist_entry_id=enrollment.waitlist_entry_id,
            created_at=enrollment.created_at,
            updated_at=enrollment.updated_at,
        )
        async with self.session_factory() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.warning(
                    "enrollment_insert_conflict",
                    workshop_id=enrollment.workshop_id,
                    payment_reference=enrollment.external_payment_reference,
                    error=str(e.orig),
                )
                raise DuplicateEnrollmentError(
                    enrollment.workshop_id, enrollment.external_payment_reference
                ) from e
        return enrollment

    async def get_enrollment(self, enrollment_id: UUID) -> Optional[Enrollment]:
        async with self.session_factory() as db:
            record = await db.get(EnrollmentRecord, enrollment_id)
            return _to_enrollment(record) if record else None

    async def find_enrollment_by_reference(self, reference: str) -> Optional[Enrollment]:
        stmt = (
            select(EnrollmentRecord)
            .where(
                or_(
                    EnrollmentRecord.external_payment_reference == reference,
                    EnrollmentRecord.payment_intent_reference == reference,
                )
            )
            .order_by(EnrollmentRecord.created_at)
            .limit(1)
        )
        async with self.session_factory() as db:
            record = (await db.execute(stmt)).scalar_one_or_none()
            return _to_enrollment(record) if record else None

    async def update_enrollment_status(
        self,
        enrollment_id: UUID,
        status: EnrollmentStatus,
        expected_status: Optional[EnrollmentStatus] = None,
        payment_intent_reference: Optional[str] = None,
        refund: Optional[RefundRecord] = None,
    ) -> Optional[Enrollment]:
        values: Dict[str, Any] = {
            "status": status.value,
            "updated_at": datetime.now(timezone.utc),
        }
        if payment_intent_reference:
            values["payment_intent_reference"] = payment_intent_reference
        if refund is not None:
            values.update(
                refund_reference=refund.reference,
                refund_amount_cents=refund.amount_cents,
                refund_reason=refund.reason,
                refunded_at=refund.refunded_at,
                updated_at=refund.refunded_at,
            )

        stmt = update(EnrollmentRecord).where(EnrollmentRecord.id == enrollment_id)
        if expected_status is not None:
            stmt = stmt.where(EnrollmentRecord.status == expected_status.value)

        async with self.session_factory() as db:
            result = await db.execute(stmt.values(**values))
            if result.rowcount == 0:
                await db.rollback()
                return None
            await db.commit()
            record = await db.get(EnrollmentRecord, enrollment_id, populate_existing=True)
            return _to_enrollment(record) if record else None

    async def attach_payment_reference(
        self, enrollment_id: UUID, external_payment_reference: str
    ) -> Optional[Enrollment]:
        stmt = (
            update(EnrollmentRecord)
            .where(EnrollmentRecord.id == enrollment_id)
            .values(
                external_payment_reference=external_payment_reference,
                updated_at=datetime.now(timezone.utc),
            )
        )
        async with self.session_factory() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                record = await db.get(EnrollmentRecord, enrollment_id)
                raise DuplicateEnrollmentError(
                    record.workshop_id if record else 0, external_payment_reference
                ) from e
            if result.rowcount == 0:
                return None
            record = await db.get(EnrollmentRecord, enrollment_id, populate_existing=True)
            return _to_enrollment(record) if record else None

    async def count_active_enrollments(self, workshop_id: int) -> int:
        stmt = select(func.count(EnrollmentRecord.id)).where(
            EnrollmentRecord.workshop_id == workshop_id,
            EnrollmentRecord.status.in_(
                [EnrollmentStatus.PENDING.value, EnrollmentStatus.COMPLETED.value]
            ),
        )
        async with self.session_factory() as db:
            return int((await db.execute(stmt)).scalar_one())

    async def record_enrollment_event(
        self,
        enrollment_id: UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            db.add(
                EnrollmentEventRecord(
                    enrollment_id=enrollment_id,
                    event_type=event_type,
                    event_data=event_data,
                    correlation_id=correlation_id,
                    created_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()

    async def append_waitlist_entry(
        self, workshop_id: int, customer: Customer, now: datetime
    ) -> WaitlistEntry:
        async with self.session_factory() as db:
            last = (
                await db.execute(
                    select(func.max(WaitlistEntryRecord.position)).where(
                        WaitlistEntryRecord.workshop_id == workshop_id
                    )
                )
            ).scalar_one_or_none()
            record = WaitlistEntryRecord(
                workshop_id=workshop_id,
                customer_name=customer.name,
                customer_email=customer.email,
                customer_phone=customer.phone,
                position=(last or 0) + 1,
                status=WaitlistStatus.WAITING.value,
                created_at=now,
                updated_at=now,
            )
            db.add(record)
            await db.commit()
            return _to_waitlist_entry(record)

    async def get_waitlist_entry(self, entry_id: UUID) -> Optional[WaitlistEntry]:
        async with self.session_factory() as db:
            record = await db.get(WaitlistEntryRecord, entry_id)
            return _to_waitlist_entry(record) if record else None

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
        values: Dict[str, Any] = {
            "status": status.value,
            "claim_token": claim_token,
            "claim_expires_at": claim_expires_at,
            "updated_at": now,
        }
        if status is WaitlistStatus.CLAIM_OFFERED:
            values["notified_at"] = now
        if enrollment_id is not None:
            values["enrollment_id"] = enrollment_id
        if spent_token_digest is not None:
            values["spent_token_digest"] = spent_token_digest

        stmt = update(WaitlistEntryRecord).where(WaitlistEntryRecord.id == entry_id)
        if expected_status is not None:
            stmt = stmt.where(WaitlistEntryRecord.status == expected_status.value)

        async with self.session_factory() as db:
            result = await db.execute(stmt.values(**values))
            if result.rowcount == 0:
                await db.rollback()
                return None
            await db.commit()
            record = await db.get(WaitlistEntryRecord, entry_id, populate_existing=True)
            return _to_waitlist_entry(record) if record else None

    async def list_waitlist(
        self, workshop_id: int, status: Optional[WaitlistStatus] = None
    ) -> List[WaitlistEntry]:
        stmt = select(WaitlistEntryRecord).where(WaitlistEntryRecord.workshop_id == workshop_id)
        if status is not None:
            stmt = stmt.where(WaitlistEntryRecord.status == status.value)
        async with self.session_factory() as db:
            records = (await db.execute(stmt.order_by(WaitlistEntryRecord.position))).scalars()
            return [_to_waitlist_entry(r) for r in records]

    async def find_waitlist_entry_by_token(self, token: str) -> Optional[WaitlistEntry]:
        stmt = select(WaitlistEntryRecord).where(
            or_(
                WaitlistEntryRecord.claim_token == token,
                WaitlistEntryRecord.spent_token_digest == token_digest(token),
            )
        ).limit(1)
        async with self.session_factory() as db:
            record = (await db.execute(stmt)).scalar_one_or_none()
            return _to_waitlist_entry(record) if record else None

    async def find_active_waitlist_entry(
        self, workshop_id: int, email: str
    ) -> Optional[WaitlistEntry]:
        stmt = (
            select(WaitlistEntryRecord)
            .where(
                WaitlistEntryRecord.workshop_id == workshop_id,
                WaitlistEntryRecord.customer_email == email.strip().lower(),
                WaitlistEntryRecord.status.in_(
                    [WaitlistStatus.WAITING.value, WaitlistStatus.CLAIM_OFFERED.value]
                ),
            )
            .order_by(WaitlistEntryRecord.position)
            .limit(1)
        )
        async with self.session_factory() as db:
            record = (await db.execute(stmt)).scalar_one_or_none()
            return _to_waitlist_entry(record) if record else None

    async def list_expired_offers(self, now: datetime) -> List[WaitlistEntry]:
        stmt = (
            select(WaitlistEntryRecord)
            .where(
                WaitlistEntryRecord.status == WaitlistStatus.CLAIM_OFFERED.value,
                WaitlistEntryRecord.claim_expires_at <= now,
            )
            .order_by(WaitlistEntryRecord.workshop_id, WaitlistEntryRecord.position)
        )
        async with self.session_factory() as db:
            records = (await db.execute(stmt)).scalars()
            return [_to_waitlist_entry(r) for r in records]

    async def list_waitlisted_workshops(self) -> List[int]:
        stmt = (
            select(WaitlistEntryRecord.workshop_id)
            .where(WaitlistEntryRecord.status == WaitlistStatus.WAITING.value)
            .distinct()
            .order_by(WaitlistEntryRecord.workshop_id)
        )
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars())
