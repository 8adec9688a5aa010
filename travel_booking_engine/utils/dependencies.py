"""
FastAPI dependencies: caller identity and service wiring.
"""

from functools import lru_cache
from typing import List

from fastapi import Depends, Header

from ..config import get_settings
from ..database import get_session_factory
from ..schemas.search import PartnerConfig
from ..services.availability_ledger import AvailabilityLedger
from ..services.booking_service import BookingService
from ..services.payment_gateway import PaymentGateway, StripePaymentGateway
from ..services.policy_provider import PolicyProvider, SettingsPolicyProvider
from ..services.search_service import HttpPartnerSource, PartnerSource, SearchService
from ..services.webhook_dispatcher import WebhookDispatcher
from .exceptions import ValidationError


async def get_current_user_id(
    x_user_id: str = Header(None, alias="X-User-Id", description="Caller identity set by the identity provider")
) -> str:
    """
    Identity of the caller.

    Authentication happens upstream; the identity collaborator forwards the
    authenticated user id in the ``X-User-Id`` header.
    """
    if not x_user_id or not x_user_id.strip():
        raise ValidationError(
            "Missing caller identity",
            field_errors={"X-User-Id": ["header is required"]},
        )
    return x_user_id.strip()


@lru_cache()
def get_payment_gateway() -> PaymentGateway:
    return StripePaymentGateway.from_settings()


async def close_payment_gateway() -> None:
    if get_payment_gateway.cache_info().currsize:
        await get_payment_gateway().close()
        get_payment_gateway.cache_clear()


@lru_cache()
def get_policy_provider() -> PolicyProvider:
    return SettingsPolicyProvider()


@lru_cache()
def get_partner_sources() -> List[PartnerSource]:
    settings = get_settings()
    return [
        HttpPartnerSource(name, PartnerConfig.from_mapping(values), timeout=settings.partner_timeout_seconds)
        for name, values in settings.partner_sources.items()
    ]


def get_ledger() -> AvailabilityLedger:
    return AvailabilityLedger(get_session_factory())


def get_booking_service(
    ledger: AvailabilityLedger = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    policy_provider: PolicyProvider = Depends(get_policy_provider)
) -> BookingService:
    return BookingService(get_session_factory(), ledger, gateway, policy_provider)


def get_webhook_dispatcher(
    booking_service: BookingService = Depends(get_booking_service)
) -> WebhookDispatcher:
    return WebhookDispatcher(get_session_factory(), booking_service)


def get_search_service(ledger: AvailabilityLedger = Depends(get_ledger)) -> SearchService:
    return SearchService(get_partner_sources(), ledger=ledger)
