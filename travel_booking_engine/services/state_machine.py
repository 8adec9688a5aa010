"""
Booking status transition table.

Transitions are explicit values: ``plan_transition`` returns the new status
plus the audit entry to append, and the booking service is the only place
that applies them to a persisted booking.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..models.base import utcnow
from ..models.booking import BookingStatus
from ..utils.exceptions import InvalidStatusTransitionError

_ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.FAILED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.MODIFIED, BookingStatus.CANCELLED, BookingStatus.COMPLETED},
    # A modified booking behaves like a confirmed one
    BookingStatus.MODIFIED: {
        BookingStatus.CONFIRMED,
        BookingStatus.MODIFIED,
        BookingStatus.CANCELLED,
        BookingStatus.COMPLETED,
    },
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.FAILED: set(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in _ALLOWED_TRANSITIONS.items() if not targets
)


@dataclass(frozen=True)
class AuditEntry:
    status: BookingStatus
    actor: str
    reason: Optional[str]
    at: datetime


@dataclass(frozen=True)
class Transition:
    previous: BookingStatus
    status: BookingStatus
    audit_entry: AuditEntry


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def plan_transition(
    current: BookingStatus,
    target: BookingStatus,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    *,
    booking_id: Optional[str] = None
) -> Transition:
    """Validate ``current -> target`` and build the resulting transition.

    Raises InvalidStatusTransitionError (carrying the current status) when
    the table does not allow the move.
    """
    if not can_transition(current, target):
        raise InvalidStatusTransitionError(
            booking_id or "unknown",
            current.value,
            target.value
        )

    return Transition(
        previous=current,
        status=target,
        audit_entry=AuditEntry(
            status=target,
            actor=actor,
            reason=reason,
            at=now or utcnow()
        )
    )
