"""
Processed payment webhook events (idempotency ledger).
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class ProcessedPaymentEvent(Base):
    """A gateway event that has been applied (or deliberately acknowledged)."""

    __tablename__ = "processed_payment_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_intent_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)

    # applied, ignored or rejected
    outcome: Mapped[str] = mapped_column(String(64), nullable=False)

    processed_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessedPaymentEvent(event_id={self.event_id}, "
            f"event_type={self.event_type}, outcome={self.outcome})>"
        )
