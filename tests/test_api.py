"""
HTTP surface tests. The app runs without its lifespan; services are wired to
a per-test SQLite file through dependency overrides.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from travel_booking_engine.cache import RedisCache
from travel_booking_engine.database import create_session_factory, create_tables
from travel_booking_engine.main import app
from travel_booking_engine.services.availability_ledger import AvailabilityLedger
from travel_booking_engine.services.booking_service import BookingService
from travel_booking_engine.services.policy_provider import SettingsPolicyProvider
from travel_booking_engine.services.search_service import SearchService
from travel_booking_engine.services.webhook_dispatcher import WebhookDispatcher
from travel_booking_engine.utils.dependencies import (
    get_booking_service,
    get_ledger,
    get_search_service,
    get_webhook_dispatcher,
)
from travel_booking_engine.utils.exceptions import ConcurrencyError

from .conftest import FakePaymentGateway, event_payload, sign

USER = {"X-User-Id": "user-1"}


def _stay_dates(days_ahead: int = 30, nights: int = 2):
    start = (datetime.now(timezone.utc) + timedelta(days=days_ahead)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=nights)


def _booking_body(resource_id: str = "R1", **overrides):
    check_in, check_out = _stay_dates()
    body = {
        "resource_id": resource_id,
        "check_in": check_in.isoformat(),
        "check_out": check_out.isoformat(),
        "guest_count": 2,
        "total_amount": "200.00",
        "currency": "eur",
    }
    body.update(overrides)
    return body


@pytest.fixture
def wiring(tmp_path, settings):
    # One connection per session: each TestClient request runs in its own event loop
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    asyncio.run(create_tables(engine))

    session_factory = create_session_factory(engine)
    ledger = AvailabilityLedger(session_factory)
    gateway = FakePaymentGateway()
    booking_service = BookingService(
        session_factory, ledger, gateway, SettingsPolicyProvider(settings), settings=settings
    )
    dispatcher = WebhookDispatcher(session_factory, booking_service, settings=settings)
    search_service = SearchService([], ledger=ledger, cache=RedisCache(), settings=settings)

    app.dependency_overrides[get_booking_service] = lambda: booking_service
    app.dependency_overrides[get_webhook_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_search_service] = lambda: search_service

    yield {"gateway": gateway, "dispatcher": dispatcher}

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


@pytest.fixture
def client(wiring):
    return TestClient(app)


def _pay(client, created, event_type="payment_intent.succeeded"):
    booking = created["booking"]
    payload = event_payload(event_type, {
        "id": booking["payment_intent_ref"],
        "object": "payment_intent",
        "amount": 20000,
        "currency": "eur",
        "metadata": {"bookingId": booking["booking_id"]},
    })
    return client.post(
        "/api/v1/payments/webhook",
        content=payload,
        headers={"Stripe-Signature": sign(payload)},
    )


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["cache"] == "disabled"


def test_create_booking(client):
    response = client.post("/api/v1/bookings", json=_booking_body(), headers=USER)

    assert response.status_code == 201
    body = response.json()
    assert body["booking"]["status"] == "pending"
    assert body["booking"]["currency"] == "EUR"
    assert body["client_secret"].startswith("pi_")
    assert body["expires_in_minutes"] == 15
    assert response.headers["X-Request-ID"]


def test_missing_identity_is_rejected(client):
    response = client.post("/api/v1/bookings", json=_booking_body())

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_invalid_body_uses_error_format(client):
    check_in, check_out = _stay_dates()
    response = client.post(
        "/api/v1/bookings",
        json=_booking_body(check_in=check_out.isoformat(), check_out=check_in.isoformat()),
        headers=USER,
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error_id"]


def test_overlapping_booking_conflicts(client):
    assert client.post("/api/v1/bookings", json=_booking_body(), headers=USER).status_code == 201

    response = client.post("/api/v1/bookings", json=_booking_body(), headers={"X-User-Id": "user-2"})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "NOT_AVAILABLE"


def test_booking_is_visible_to_owner_only(client):
    created = client.post("/api/v1/bookings", json=_booking_body(), headers=USER).json()
    booking_id = created["booking"]["booking_id"]

    assert client.get(f"/api/v1/bookings/{booking_id}", headers=USER).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}", headers={"X-User-Id": "user-2"}).status_code == 404
    assert client.get(f"/api/v1/bookings/{uuid4()}", headers=USER).status_code == 404

    listing = client.get("/api/v1/bookings", params={"status": "pending"}, headers=USER).json()
    assert [b["booking_id"] for b in listing["bookings"]] == [booking_id]


def test_webhook_confirms_and_cancel_refunds(client, wiring):
    created = client.post("/api/v1/bookings", json=_booking_body(), headers=USER).json()
    booking_id = created["booking"]["booking_id"]

    ack = _pay(client, created)
    assert ack.status_code == 200
    assert ack.json()["outcome"] == "applied"
    assert ack.json()["detail"] == "confirmed"

    booking = client.get(f"/api/v1/bookings/{booking_id}", headers=USER).json()
    assert booking["status"] == "confirmed"
    assert booking["confirmation_number"].startswith("TB-")

    cancelled = client.request("DELETE", f"/api/v1/bookings/{booking_id}", json={"reason": "Plans changed"}, headers=USER)
    assert cancelled.status_code == 200
    assert cancelled.json()["booking"]["status"] == "cancelled"
    assert cancelled.json()["refund_id"]
    assert len(wiring["gateway"].refunds) == 1

    again = client.delete(f"/api/v1/bookings/{booking_id}", headers=USER)
    assert again.status_code == 409
    assert again.json()["error"]["details"]["terms"]["refund_amount"] == "200.00"


def test_modify_booking(client):
    created = client.post("/api/v1/bookings", json=_booking_body(), headers=USER).json()
    _pay(client, created)

    response = client.patch(
        f"/api/v1/bookings/{created['booking']['booking_id']}", json={"guest_count": 3}, headers=USER
    )

    assert response.status_code == 200
    assert response.json()["booking"]["status"] == "modified"
    assert response.json()["booking"]["guest_count"] == 3


def test_redelivered_webhook_is_acknowledged(client):
    created = client.post("/api/v1/bookings", json=_booking_body(), headers=USER).json()
    booking = created["booking"]
    payload = event_payload("payment_intent.succeeded", {
        "id": booking["payment_intent_ref"],
        "metadata": {"bookingId": booking["booking_id"]},
    }, event_id="evt_api_1")
    headers = {"Stripe-Signature": sign(payload)}

    first = client.post("/api/v1/payments/webhook", content=payload, headers=headers)
    second = client.post("/api/v1/payments/webhook", content=payload, headers=headers)

    assert first.status_code == second.status_code == 200
    assert second.json()["duplicate"] is True


def test_unsigned_webhook_is_rejected(client):
    response = client.post("/api/v1/payments/webhook", content=event_payload("customer.created", {"id": "cus_1"}))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_SIGNATURE"


def test_transient_webhook_failure_asks_for_redelivery(client):
    class BusyDispatcher:
        async def handle_event(self, payload, signature_header):
            raise ConcurrencyError("Booking is being updated")

    app.dependency_overrides[get_webhook_dispatcher] = lambda: BusyDispatcher()

    response = client.post("/api/v1/payments/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=0"})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"


def test_availability(client):
    check_in, check_out = _stay_dates()
    params = {"resource_id": "R1", "check_in": check_in.isoformat(), "check_out": check_out.isoformat()}

    assert client.get("/api/v1/availability", params=params).json()["available"] is True
    client.post("/api/v1/bookings", json=_booking_body(), headers=USER)
    assert client.get("/api/v1/availability", params=params).json()["available"] is False

    inverted = {**params, "check_in": params["check_out"], "check_out": params["check_in"]}
    assert client.get("/api/v1/availability", params=inverted).status_code == 422


def test_search_without_partners(client):
    check_in, check_out = _stay_dates()
    response = client.post("/api/v1/search/accommodations", json={
        "destination": "Lisbon",
        "check_in": check_in.isoformat(),
        "check_out": check_out.isoformat(),
    })

    assert response.status_code == 200
    assert response.json()["results"] == []
