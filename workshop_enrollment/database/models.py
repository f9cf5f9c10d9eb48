"""SQLAlchemy database models for workshop admission."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB and BIGSERIAL on PostgreSQL, plain JSON and INTEGER rowid on SQLite
JsonType = JSON().with_variant(JSONB(), "postgresql")
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class WorkshopRecord(Base):
    """
    Workshops table.

    Capacity 0 means unlimited. Capacity and the waitlist flag are re-read on
    every admission decision, so edits here take effect immediately.
    """

    __tablename__ = "workshops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    waitlist_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    pricing_options: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="non_negative_capacity"),
        CheckConstraint("price_cents >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        """String representation of WorkshopRecord."""
        return f"<WorkshopRecord(id={self.id}, capacity={self.capacity})>"


class EnrollmentRecord(Base):
    """
    Enrollments table.

    One row per seat. Only pending and completed rows count against capacity.
    The refund columns are written in the same UPDATE that moves the row to
    refunded and are immutable afterwards.
    """

    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workshop_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workshops.id"), nullable=False, index=True
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_phone: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    pricing_option: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    external_payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_intent_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    refund_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waitlist_entry_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "workshop_id", "external_payment_reference", name="uq_enrollment_payment_reference"
        ),
        CheckConstraint("amount_cents >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'refunded', 'failed')",
            name="valid_enrollment_status",
        ),
        CheckConstraint(
            "(status = 'refunded') = (refund_reference IS NOT NULL)",
            name="refund_reference_iff_refunded",
        ),
        Index("idx_enrollments_workshop_status", "workshop_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of EnrollmentRecord."""
        return (
            f"<EnrollmentRecord(id={self.id}, workshop_id={self.workshop_id}, "
            f"status={self.status})>"
        )


class WaitlistEntryRecord(Base):
    """
    Waitlist entries table.

    Positions are unique per workshop and never renumbered. The claim token is
    unique across all workshops and only present while the offer is open.
    """

    __tablename__ = "waitlist_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workshop_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workshops.id"), nullable=False, index=True
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    claim_token: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    enrollment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    spent_token_digest: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("workshop_id", "position", name="uq_waitlist_position"),
        CheckConstraint("position > 0", name="positive_position"),
        CheckConstraint(
            "status IN ('waiting', 'claim_offered', 'claimed', 'expired', 'cancelled')",
            name="valid_waitlist_status",
        ),
        CheckConstraint(
            "(status = 'claim_offered') = (claim_token IS NOT NULL)",
            name="claim_token_iff_offered",
        ),
        Index("idx_waitlist_workshop_status", "workshop_id", "status", "position"),
    )

    def __repr__(self) -> str:
        """String representation of WaitlistEntryRecord."""
        return (
            f"<WaitlistEntryRecord(id={self.id}, workshop_id={self.workshop_id}, "
            f"position={self.position}, status={self.status})>"
        )


class EnrollmentEventRecord(Base):
    """
    Enrollment events audit trail table.

    Stores every state change of an enrollment. Immutable once written.
    """

    __tablename__ = "enrollment_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (Index("idx_enrollment_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of EnrollmentEventRecord."""
        return (
            f"<EnrollmentEventRecord(id={self.id}, enrollment_id={self.enrollment_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Customer notifications are written here and published asynchronously by
    a background worker, so a slow mail provider never blocks admission.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
