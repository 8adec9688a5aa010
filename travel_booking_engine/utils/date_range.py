"""
Half-open stay interval used by the ledger, the policy evaluator and search.
"""

from dataclasses import dataclass
from datetime import datetime, timezone


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DateRange:
    """Stay interval ``[check_in, check_out)`` in UTC."""

    check_in: datetime
    check_out: datetime

    def __post_init__(self):
        if self.check_in.tzinfo is None or self.check_out.tzinfo is None:
            raise ValueError("check_in and check_out must be timezone-aware")
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        object.__setattr__(self, "check_in", self.check_in.astimezone(timezone.utc))
        object.__setattr__(self, "check_out", self.check_out.astimezone(timezone.utc))

    @classmethod
    def from_datetimes(cls, check_in: datetime, check_out: datetime) -> "DateRange":
        return cls(as_utc(check_in), as_utc(check_out))

    @property
    def nights(self) -> int:
        return max((self.check_out.date() - self.check_in.date()).days, 1)

    def overlaps(self, other: "DateRange") -> bool:
        # Back-to-back stays share a boundary and do not overlap
        return self.check_in < other.check_out and other.check_in < self.check_out

    def __str__(self) -> str:
        return f"{self.check_in.isoformat()}/{self.check_out.isoformat()}"
