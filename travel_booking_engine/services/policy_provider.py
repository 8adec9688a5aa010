"""
Catalog collaborator boundary: the cancellation/modification policy of a resource.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Protocol

from ..config import Settings, get_settings
from .policy_evaluator import BookingPolicy

logger = logging.getLogger(__name__)


class PolicyProvider(Protocol):
    async def get_policy(self, resource_id: str) -> BookingPolicy:
        ...


class SettingsPolicyProvider:
    """Policies from configuration: global defaults plus per-resource overrides.

    ``policy_overrides`` maps a resource id to any subset of the policy
    fields, e.g. ``{"R1": {"free_window_hours": "72"}}``.
    """

    _INT_FIELDS = ("free_window_hours", "partial_refund_window_hours", "modification_cutoff_hours")
    _DECIMAL_FIELDS = ("refund_percentage_in_window", "change_fee_amount")

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.default_policy = BookingPolicy(
            free_window_hours=settings.default_free_window_hours,
            partial_refund_window_hours=settings.default_partial_refund_window_hours,
            refund_percentage_in_window=settings.default_refund_percentage_in_window,
            change_fee_amount=settings.default_change_fee_amount,
            modification_cutoff_hours=settings.default_modification_cutoff_hours,
        )
        self._overrides: Dict[str, BookingPolicy] = {
            resource_id: self._build(values)
            for resource_id, values in settings.policy_overrides.items()
        }

    def _build(self, values: Dict[str, str]) -> BookingPolicy:
        fields = {
            "free_window_hours": self.default_policy.free_window_hours,
            "partial_refund_window_hours": self.default_policy.partial_refund_window_hours,
            "refund_percentage_in_window": self.default_policy.refund_percentage_in_window,
            "change_fee_amount": self.default_policy.change_fee_amount,
            "modification_cutoff_hours": self.default_policy.modification_cutoff_hours,
        }
        for key, value in values.items():
            if key in self._INT_FIELDS:
                fields[key] = int(value)
            elif key in self._DECIMAL_FIELDS:
                fields[key] = Decimal(str(value))
            else:
                raise ValueError(f"Unknown policy field: {key}")
        return BookingPolicy(**fields)

    async def get_policy(self, resource_id: str) -> BookingPolicy:
        return self._overrides.get(resource_id, self.default_policy)
