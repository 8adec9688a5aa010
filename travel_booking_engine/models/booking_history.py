"""
Append-only status history for bookings.
"""

import uuid
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow
from .booking import BookingStatus

if TYPE_CHECKING:
    from .booking import Booking


class BookingStatusHistory(UUIDPrimaryKeyMixin, Base):
    """One audit entry per status change of a booking."""

    __tablename__ = "booking_status_history"

    booking_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, native_enum=False, length=16),
        nullable=False
    )

    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="status_history")

    __table_args__ = (
        UniqueConstraint("booking_id", "sequence", name="uq_booking_status_history_sequence"),
    )

    def __repr__(self) -> str:
        return (
            f"<BookingStatusHistory(booking_id={self.booking_id}, "
            f"sequence={self.sequence}, status={self.status.value})>"
        )
