"""
Cancellation and modification policy evaluation.

Pure functions: the result depends only on the booking snapshot, the policy
and the supplied ``now``, so every boundary hour can be unit tested.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from ..utils.date_range import DateRange

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class BookingPolicy:
    """Cancellation and modification policy of a resource."""

    free_window_hours: int = 48
    partial_refund_window_hours: int = 24
    refund_percentage_in_window: Decimal = Decimal("50")
    change_fee_amount: Decimal = Decimal("25.00")
    modification_cutoff_hours: Optional[int] = None

    def __post_init__(self):
        if self.partial_refund_window_hours > self.free_window_hours:
            raise ValueError("partial_refund_window_hours cannot exceed free_window_hours")
        if not Decimal("0") <= Decimal(self.refund_percentage_in_window) <= HUNDRED:
            raise ValueError("refund_percentage_in_window must be between 0 and 100")

    @property
    def effective_modification_cutoff_hours(self) -> int:
        if self.modification_cutoff_hours is None:
            return self.free_window_hours
        return self.modification_cutoff_hours


@dataclass(frozen=True)
class CancellationTerms:
    refund_eligible: bool
    refund_amount: Decimal
    refund_percentage: Decimal
    hours_until_check_in: float

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class ModificationTerms:
    allowed: bool
    reason: Optional[str]
    change_fee: Decimal
    price_delta: Decimal
    new_total: Decimal
    amount_due: Decimal
    hours_until_check_in: float

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


def _serialize(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: str(value) if isinstance(value, Decimal) else value for key, value in data.items()}


def _money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def time_until_check_in(booking, now: datetime) -> timedelta:
    return booking.check_in - now


def hours_until_check_in(booking, now: datetime) -> float:
    """Hours left before check-in (negative once the stay has started)."""
    return round(time_until_check_in(booking, now).total_seconds() / 3600, 4)


def evaluate_cancellation(booking, policy: BookingPolicy, now: datetime) -> CancellationTerms:
    """
    Refund due if ``booking`` is cancelled at ``now``.

    Both thresholds are inclusive: exactly ``free_window_hours`` before
    check-in still earns a full refund. The percentage applies to the amount
    actually captured, so a modified booking never refunds its unpaid delta.
    """
    remaining = time_until_check_in(booking, now)
    total = Decimal(booking.refundable_amount)

    if remaining >= timedelta(hours=policy.free_window_hours):
        percentage = HUNDRED
    elif remaining >= timedelta(hours=policy.partial_refund_window_hours):
        percentage = Decimal(policy.refund_percentage_in_window)
    else:
        percentage = Decimal("0")

    refund_amount = _money(total * percentage / HUNDRED)

    return CancellationTerms(
        refund_eligible=refund_amount > 0,
        refund_amount=refund_amount,
        refund_percentage=percentage,
        hours_until_check_in=hours_until_check_in(booking, now),
    )


def price_delta_for(booking, new_range: Optional[DateRange]) -> Decimal:
    """Pro rata price change of moving ``booking`` to ``new_range``."""
    if new_range is None:
        return _money(Decimal("0"))
    total = Decimal(booking.total_amount)
    nightly = total / Decimal(booking.nights)
    return _money(nightly * new_range.nights - total)


def evaluate_modification(
    booking,
    policy: BookingPolicy,
    now: datetime,
    new_range: Optional[DateRange] = None
) -> ModificationTerms:
    """Whether ``booking`` may still be changed and what the change costs."""
    remaining = time_until_check_in(booking, now)
    cutoff = policy.effective_modification_cutoff_hours

    change_fee = _money(policy.change_fee_amount)
    price_delta = price_delta_for(booking, new_range)
    new_total = _money(Decimal(booking.total_amount) + price_delta)

    allowed = remaining >= timedelta(hours=cutoff)
    reason = None
    if not allowed:
        reason = f"Modifications close {cutoff} hours before check-in"

    return ModificationTerms(
        allowed=allowed,
        reason=reason,
        change_fee=change_fee,
        price_delta=price_delta,
        new_total=new_total,
        amount_due=_money(change_fee + price_delta),
        hours_until_check_in=hours_until_check_in(booking, now),
    )
