"""Business logic services for the Travel Booking Engine."""

from .availability_ledger import AvailabilityLedger
from .booking_service import BookingService
from .payment_gateway import PaymentGateway, StripePaymentGateway
from .policy_provider import PolicyProvider, SettingsPolicyProvider
from .search_service import SearchService
from .webhook_dispatcher import WebhookDispatcher

__all__ = [
    "AvailabilityLedger",
    "BookingService",
    "PaymentGateway",
    "StripePaymentGateway",
    "PolicyProvider",
    "SettingsPolicyProvider",
    "SearchService",
    "WebhookDispatcher",
]
