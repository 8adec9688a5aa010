"""
Availability ledger tables: reservation holds and per-resource guard rows.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin


class HoldStatus(str, enum.Enum):
    """Lifecycle of a ledger entry."""
    HELD = "held"
    ALLOCATED = "allocated"
    RELEASED = "released"
    EXPIRED = "expired"


class ReservationHold(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A provisional (held) or durable (allocated) claim on a resource/date range."""

    __tablename__ = "reservation_holds"

    resource_id: Mapped[str] = mapped_column(String(128), nullable=False)
    check_in: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    check_out: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    booking_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    status: Mapped[HoldStatus] = mapped_column(
        Enum(HoldStatus, native_enum=False, length=16),
        default=HoldStatus.HELD,
        nullable=False
    )

    # Null once allocated
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("check_out > check_in", name="ck_reservation_holds_date_order"),
        Index("ix_reservation_holds_resource_status", "resource_id", "status"),
    )

    def is_active(self, now: datetime) -> bool:
        """Allocated, or held and not yet lapsed."""
        if self.status == HoldStatus.ALLOCATED:
            return True
        return (
            self.status == HoldStatus.HELD
            and self.expires_at is not None
            and self.expires_at > now
        )

    def __repr__(self) -> str:
        return (
            f"<ReservationHold(id={self.id}, resource_id={self.resource_id}, "
            f"status={self.status.value}, booking_id={self.booking_id})>"
        )


class ResourceGuard(Base):
    """Per-resource lock row; every hold creation locks it and bumps its version."""

    __tablename__ = "resource_guards"

    resource_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("version > 0", name="ck_resource_guards_version_positive"),
    )

    def __repr__(self) -> str:
        return f"<ResourceGuard(resource_id={self.resource_id}, version={self.version})>"
