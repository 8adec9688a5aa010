"""
Database models for the travel booking engine.
"""

from .base import Base, utcnow
from .booking import Booking, BookingStatus, PaymentStatus
from .booking_history import BookingStatusHistory
from .reservation_hold import ReservationHold, HoldStatus, ResourceGuard
from .processed_event import ProcessedPaymentEvent

__all__ = [
    "Base",
    "utcnow",
    "Booking",
    "BookingStatus",
    "PaymentStatus",
    "BookingStatusHistory",
    "ReservationHold",
    "HoldStatus",
    "ResourceGuard",
    "ProcessedPaymentEvent",
]
