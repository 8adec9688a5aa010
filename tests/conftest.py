"""
Shared fixtures: a file-backed SQLite database per test, a controllable clock
and an in-memory payment gateway.
"""

import hashlib
import hmac
import itertools
import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

from travel_booking_engine.config import Settings
from travel_booking_engine.database import (
    create_database_engine,
    create_session_factory,
    create_tables,
)
from travel_booking_engine.services.availability_ledger import AvailabilityLedger
from travel_booking_engine.services.booking_service import BookingRequest, BookingService
from travel_booking_engine.services.payment_gateway import PaymentIntent, RefundResult
from travel_booking_engine.services.policy_provider import SettingsPolicyProvider
from travel_booking_engine.services.webhook_dispatcher import WebhookDispatcher
from travel_booking_engine.utils.exceptions import GatewayError

WEBHOOK_SECRET = "whsec_test_secret"

NOW = datetime(2025, 5, 20, 12, 0, tzinfo=timezone.utc)
CHECK_IN = datetime(2025, 6, 1, tzinfo=timezone.utc)
CHECK_OUT = datetime(2025, 6, 3, tzinfo=timezone.utc)


class FixedClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePaymentGateway:
    """In-memory gateway honouring idempotency keys like the real one."""

    def __init__(self):
        self.intents: Dict[str, PaymentIntent] = {}
        self.intent_metadata: Dict[str, Dict[str, str]] = {}
        self.refunds: Dict[str, RefundResult] = {}
        self.refund_calls: List[dict] = []
        self.canceled: List[str] = []
        self.fail_create = False
        self.fail_refund = False
        self._ids = itertools.count(1)

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        if self.fail_create:
            raise GatewayError("stripe", "payment_intents answered 503", status_code=503)
        if idempotency_key in self.intents:
            return self.intents[idempotency_key]

        number = next(self._ids)
        intent = PaymentIntent(
            intent_id=f"pi_{number}",
            client_secret=f"pi_{number}_secret_test",
            status="requires_payment_method",
        )
        self.intents[idempotency_key or intent.intent_id] = intent
        self.intent_metadata[intent.intent_id] = dict(metadata)
        return intent

    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> RefundResult:
        self.refund_calls.append({
            "intent_id": intent_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
        })
        if self.fail_refund:
            raise GatewayError("stripe", "refunds answered 503", status_code=503)
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]

        refund = RefundResult(refund_id=f"re_{next(self._ids)}", status="pending", amount=amount)
        self.refunds[idempotency_key or refund.refund_id] = refund
        return refund

    async def cancel_intent(self, intent_id: str, idempotency_key: Optional[str] = None) -> PaymentIntent:
        self.canceled.append(intent_id)
        return PaymentIntent(intent_id=intent_id, client_secret=None, status="canceled")


def sign(payload: bytes, timestamp: Optional[int] = None, secret: str = WEBHOOK_SECRET) -> str:
    """Stripe-Signature header for ``payload``, stamped now unless told otherwise."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_payload(event_type: str, obj: dict, event_id: Optional[str] = None) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def settings():
    return Settings(
        hold_ttl_minutes=15,
        stripe_webhook_secret=WEBHOOK_SECRET,
        default_free_window_hours=48,
        default_partial_refund_window_hours=24,
        default_refund_percentage_in_window=Decimal("50"),
        default_change_fee_amount=Decimal("25.00"),
        default_modification_cutoff_hours=24,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_database_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}", echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def ledger(session_factory, clock):
    return AvailabilityLedger(session_factory, clock=clock)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def policy_provider(settings):
    return SettingsPolicyProvider(settings)


@pytest.fixture
def booking_service(session_factory, ledger, gateway, policy_provider, clock, settings):
    return BookingService(session_factory, ledger, gateway, policy_provider, clock=clock, settings=settings)


@pytest.fixture
def dispatcher(session_factory, booking_service, clock, settings):
    return WebhookDispatcher(
        session_factory,
        booking_service,
        secret=WEBHOOK_SECRET,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def make_request():
    def _make(**overrides) -> BookingRequest:
        values = {
            "resource_id": "R1",
            "user_id": "user-1",
            "check_in": CHECK_IN,
            "check_out": CHECK_OUT,
            "guest_count": 2,
            "total_amount": Decimal("200.00"),
            "currency": "EUR",
        }
        values.update(overrides)
        return BookingRequest(**values)
    return _make


@pytest.fixture
def deliver(dispatcher):
    """Sign and deliver a webhook event the way the gateway would."""
    async def _deliver(
        event_type: str,
        obj: dict,
        event_id: Optional[str] = None,
        secret: str = WEBHOOK_SECRET
    ):
        payload = event_payload(event_type, obj, event_id)
        return await dispatcher.handle_event(payload, sign(payload, secret=secret))
    return _deliver


@pytest.fixture
def intent_object():
    """Payment intent object for the booking created by ``create_booking``."""
    def _object(created, status: str = "succeeded", **extra) -> dict:
        obj = {
            "id": created.payment_intent.intent_id,
            "object": "payment_intent",
            "amount": int(created.booking.total_amount * 100),
            "currency": created.booking.currency.lower(),
            "status": status,
            "metadata": {"bookingId": str(created.booking.id)},
        }
        obj.update(extra)
        return obj
    return _object


@pytest.fixture
async def confirmed(booking_service, make_request, deliver, intent_object):
    """A booking for R1 (2025-06-01 -> 2025-06-03, 200 EUR) that has been paid."""
    created = await booking_service.create_booking(make_request())
    await deliver("payment_intent.succeeded", intent_object(created))
    return created
