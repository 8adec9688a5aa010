"""
Booking model for accommodation reservations.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import CheckConstraint, Enum, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from .booking_history import BookingStatusHistory


class BookingStatus(str, enum.Enum):
    """Lifecycle status of a booking."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    MODIFIED = "modified"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    """Payment status as last reported by the gateway."""
    UNPAID = "unpaid"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


class Booking(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A reservation of one resource for a check-in/check-out range."""

    __tablename__ = "bookings"

    resource_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    check_out: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    guest_count: Mapped[int] = mapped_column(Integer, nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Amount captured by the gateway; refunds never exceed it
    amount_paid: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, native_enum=False, length=16),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True
    )

    # Payment reconciliation
    payment_intent_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False, length=16),
        default=PaymentStatus.UNPAID,
        nullable=False
    )
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refund_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Current hold or allocation in the availability ledger
    hold_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    confirmation_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Optimistic concurrency: every flush of a change is a compare-and-set
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    status_history: Mapped[List["BookingStatusHistory"]] = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingStatusHistory.sequence",
        lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("guest_count > 0", name="ck_bookings_guest_count_positive"),
        CheckConstraint("total_amount > 0", name="ck_bookings_total_amount_positive"),
        CheckConstraint("check_out > check_in", name="ck_bookings_date_order"),
    )

    @property
    def nights(self) -> int:
        """Number of nights covered by the stay (at least one)."""
        return max((self.check_out.date() - self.check_in.date()).days, 1)

    @property
    def refundable_amount(self) -> Decimal:
        """What a refund is based on: the captured amount once paid, else the quote."""
        if self.amount_paid is not None:
            return self.amount_paid
        return self.total_amount

    @property
    def is_active(self) -> bool:
        """Booking still occupies its resource."""
        return self.status in (
            BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.MODIFIED
        )

    def is_expired(self, now: datetime) -> bool:
        """Pending booking whose hold deadline has passed."""
        return (
            self.status == BookingStatus.PENDING
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, resource_id={self.resource_id}, "
            f"status={self.status.value}, version={self.version})>"
        )
