import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from travel_booking_engine.models.booking import Booking, BookingStatus, PaymentStatus
from travel_booking_engine.models.reservation_hold import HoldStatus
from travel_booking_engine.services.booking_service import (
    BookingChanges,
    CancellationResult,
    ConfirmationOutcome,
    ModificationResult,
)
from travel_booking_engine.utils.date_range import DateRange
from travel_booking_engine.utils.exceptions import (
    BookingNotFoundError,
    ConcurrencyError,
    GatewayError,
    InvalidStatusTransitionError,
    ModificationNotAllowedError,
    NotAvailableError,
    ValidationError,
)

from .conftest import CHECK_IN, CHECK_OUT, NOW

STAY = DateRange(CHECK_IN, CHECK_OUT)


async def _count_bookings(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count(Booking.id)))


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------

async def test_create_booking_holds_resource_and_opens_intent(booking_service, ledger, gateway, make_request):
    created = await booking_service.create_booking(make_request())
    booking = created.booking

    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.UNPAID
    assert booking.payment_intent_ref == created.payment_intent.intent_id
    assert booking.expires_at == NOW + timedelta(minutes=15)
    assert [entry.status for entry in booking.status_history] == [BookingStatus.PENDING]
    assert booking.status_history[0].sequence == 1

    hold = await ledger.get_hold(booking.hold_id)
    assert hold.status == HoldStatus.HELD
    assert not await ledger.is_available("R1", STAY)

    assert gateway.intent_metadata[created.payment_intent.intent_id]["bookingId"] == str(booking.id)
    assert f"intent-{booking.id}" in gateway.intents


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"check_out": CHECK_IN}, "check_out"),
        ({"check_in": NOW - timedelta(days=1), "check_out": CHECK_OUT}, "check_in"),
        ({"guest_count": 0}, "guest_count"),
        ({"guest_count": 17}, "guest_count"),
        ({"total_amount": Decimal("0")}, "total_amount"),
        ({"total_amount": Decimal("10.001")}, "total_amount"),
        ({"currency": "EURO"}, "currency"),
        ({"resource_id": " "}, "resource_id"),
    ],
)
async def test_invalid_requests_are_rejected_before_holding(
    booking_service, ledger, session_factory, make_request, overrides, field
):
    with pytest.raises(ValidationError) as exc_info:
        await booking_service.create_booking(make_request(**overrides))

    assert field in exc_info.value.details["field_errors"]
    assert await ledger.is_available("R1", STAY)
    assert await _count_bookings(session_factory) == 0


async def test_overlapping_request_persists_nothing(booking_service, session_factory, make_request):
    await booking_service.create_booking(make_request())

    with pytest.raises(NotAvailableError):
        await booking_service.create_booking(
            make_request(user_id="user-2", check_in=CHECK_IN + timedelta(days=1), check_out=CHECK_OUT + timedelta(days=1))
        )

    assert await _count_bookings(session_factory) == 1


async def test_concurrent_creates_admit_exactly_one(booking_service, session_factory, make_request):
    attempts = 5
    results = await asyncio.gather(
        *(booking_service.create_booking(make_request(user_id=f"user-{n}")) for n in range(attempts)),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, BaseException)]
    refused = [r for r in results if isinstance(r, NotAvailableError)]
    assert len(created) == 1
    assert len(refused) == attempts - 1
    assert await _count_bookings(session_factory) == 1


async def test_intent_failure_keeps_failed_booking_and_frees_resource(booking_service, ledger, gateway, make_request):
    gateway.fail_create = True

    with pytest.raises(GatewayError):
        await booking_service.create_booking(make_request())

    [booking] = await booking_service.list_user_bookings("user-1")
    assert booking.status == BookingStatus.FAILED
    assert booking.failure_reason
    assert await ledger.is_available("R1", STAY)


# ----------------------------------------------------------------------
# Payment reconciliation
# ----------------------------------------------------------------------

async def test_confirm_allocates_hold(booking_service, ledger, make_request):
    created = await booking_service.create_booking(make_request())

    result = await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)
    booking = result.booking

    assert result.outcome == ConfirmationOutcome.CONFIRMED
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.SUCCEEDED
    assert booking.confirmation_number.startswith("TB-")
    assert booking.expires_at is None
    assert [entry.status for entry in booking.status_history] == [BookingStatus.PENDING, BookingStatus.CONFIRMED]
    assert (await ledger.get_hold(booking.hold_id)).status == HoldStatus.ALLOCATED


async def test_confirm_twice_is_a_no_op(booking_service, make_request):
    created = await booking_service.create_booking(make_request())
    first = await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)

    second = await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)

    assert second.outcome == ConfirmationOutcome.ALREADY_CONFIRMED
    assert second.booking.confirmation_number == first.booking.confirmation_number
    assert len(second.booking.status_history) == 2


async def test_confirm_rejects_foreign_intent(booking_service, make_request):
    created = await booking_service.create_booking(make_request())

    with pytest.raises(ValidationError):
        await booking_service.confirm(created.booking.id, "pi_someone_else")


async def test_payment_after_hold_expiry_fails_and_refunds(booking_service, ledger, gateway, clock, make_request):
    created = await booking_service.create_booking(make_request())
    clock.advance(minutes=16)

    result = await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)

    assert result.outcome == ConfirmationOutcome.HOLD_EXPIRED
    assert result.booking.status == BookingStatus.FAILED
    assert result.booking.confirmation_number is None
    assert result.booking.payment_status == PaymentStatus.REFUND_PENDING
    assert result.booking.refund_amount == Decimal("200.00")
    assert [call["idempotency_key"] for call in gateway.refund_calls] == [f"refund-{created.booking.id}"]
    assert gateway.refund_calls[0]["amount"] is None
    assert await ledger.is_available("R1", STAY)


async def test_late_payment_redelivery_refunds_once(booking_service, gateway, clock, make_request):
    created = await booking_service.create_booking(make_request())
    clock.advance(minutes=16)
    await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)

    again = await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)

    assert again.outcome == ConfirmationOutcome.HOLD_EXPIRED
    assert again.refund is None
    assert len(gateway.refund_calls) == 1


async def test_payment_for_cancelled_pending_booking_is_refunded(booking_service, gateway, make_request):
    created = await booking_service.create_booking(make_request())
    await booking_service.cancel(created.booking.id, user_id="user-1")

    result = await booking_service.confirm(created.booking.id, created.payment_intent.intent_id)

    assert result.outcome == ConfirmationOutcome.LATE_PAYMENT_REFUNDED
    assert result.booking.status == BookingStatus.CANCELLED
    assert len(gateway.refunds) == 1


async def test_fail_releases_hold(booking_service, ledger, make_request):
    created = await booking_service.create_booking(make_request())

    booking = await booking_service.fail(created.booking.id, "Card declined", payment_intent_ref=created.payment_intent.intent_id)

    assert booking.status == BookingStatus.FAILED
    assert booking.payment_status == PaymentStatus.FAILED
    assert booking.failure_reason == "Card declined"
    assert await ledger.is_available("R1", STAY)


async def test_fail_after_confirmation_is_refused(booking_service, confirmed):
    with pytest.raises(InvalidStatusTransitionError):
        await booking_service.fail(confirmed.booking.id, "Card declined")


async def test_record_refund_is_idempotent(booking_service, confirmed, clock):
    clock.set(CHECK_IN - timedelta(hours=72))
    await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    first = await booking_service.record_refund(confirmed.booking.id, "re_1", Decimal("200.00"))
    second = await booking_service.record_refund(confirmed.booking.id, "re_1", Decimal("200.00"))

    assert first.payment_status == PaymentStatus.REFUNDED
    assert second.version == first.version


# ----------------------------------------------------------------------
# Expiry
# ----------------------------------------------------------------------

async def test_reads_expire_lapsed_pending_bookings(booking_service, ledger, clock, make_request):
    created = await booking_service.create_booking(make_request())
    clock.advance(minutes=15)

    booking = await booking_service.get_booking(created.booking.id)

    assert booking.status == BookingStatus.FAILED
    assert booking.failure_reason == "Hold expired before payment was confirmed"
    assert await ledger.is_available("R1", STAY)


async def test_expiry_sweep(booking_service, ledger, clock, make_request):
    stale = await booking_service.create_booking(make_request())
    clock.advance(minutes=10)
    fresh = await booking_service.create_booking(make_request(resource_id="R2"))
    clock.advance(minutes=6)

    assert await booking_service.expire_stale_bookings() == 1

    assert (await booking_service.get_booking(stale.booking.id)).status == BookingStatus.FAILED
    assert (await booking_service.get_booking(fresh.booking.id)).status == BookingStatus.PENDING
    assert (await ledger.get_hold(stale.booking.hold_id)).status == HoldStatus.RELEASED


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

async def test_cancel_with_full_refund_frees_resource(booking_service, ledger, gateway, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=72))

    result = await booking_service.cancel(confirmed.booking.id, "Plans changed", user_id="user-1")

    assert result.terms.refund_amount == Decimal("200.00")
    assert result.booking.status == BookingStatus.CANCELLED
    assert result.booking.cancellation_reason == "Plans changed"
    assert result.booking.payment_status == PaymentStatus.REFUND_PENDING
    assert result.booking.refund_ref == result.refund.refund_id
    assert gateway.refund_calls == [{
        "intent_id": confirmed.payment_intent.intent_id,
        "amount": Decimal("200.00"),
        "idempotency_key": f"refund-{confirmed.booking.id}",
    }]
    assert await ledger.is_available("R1", STAY)


async def test_cancel_inside_partial_window(booking_service, gateway, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=30))

    result = await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    assert result.terms.refund_percentage == Decimal("50")
    assert gateway.refund_calls[0]["amount"] == Decimal("100.00")


async def test_cancel_without_refund(booking_service, gateway, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=1))

    result = await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    assert result.booking.status == BookingStatus.CANCELLED
    assert result.refund is None
    assert result.booking.payment_status == PaymentStatus.SUCCEEDED
    assert gateway.refund_calls == []


async def test_cancel_pending_cancels_intent(booking_service, ledger, gateway, make_request):
    created = await booking_service.create_booking(make_request())

    result = await booking_service.cancel(created.booking.id, user_id="user-1")

    assert result.booking.status == BookingStatus.CANCELLED
    assert result.refund is None
    assert not result.terms.refund_eligible
    assert result.terms.refund_amount == Decimal("0.00")
    assert gateway.refund_calls == []
    assert gateway.canceled == [created.payment_intent.intent_id]
    assert await ledger.is_available("R1", STAY)


async def test_refund_after_modification_is_capped_at_amount_paid(booking_service, gateway, clock, confirmed):
    await booking_service.modify(
        confirmed.booking.id, BookingChanges(check_out=CHECK_OUT + timedelta(days=2)), user_id="user-1"
    )
    clock.set(CHECK_IN - timedelta(hours=72))

    result = await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    assert result.booking.total_amount == Decimal("400.00")
    assert result.booking.amount_paid == Decimal("200.00")
    assert result.terms.refund_amount == Decimal("200.00")
    assert gateway.refund_calls[0]["amount"] == Decimal("200.00")
    assert result.booking.refund_ref == result.refund.refund_id


async def test_partial_refund_after_modification_uses_amount_paid(booking_service, gateway, clock, confirmed):
    await booking_service.modify(
        confirmed.booking.id, BookingChanges(check_out=CHECK_OUT + timedelta(days=2)), user_id="user-1"
    )
    clock.set(CHECK_IN - timedelta(hours=30))

    result = await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    assert result.terms.refund_amount == Decimal("100.00")
    assert gateway.refund_calls[0]["amount"] == Decimal("100.00")


async def test_second_cancel_is_refused_with_terms(booking_service, gateway, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=72))
    await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    assert exc_info.value.current_status == "cancelled"
    assert exc_info.value.details["terms"]["refund_amount"] == "200.00"
    assert len(gateway.refund_calls) == 1


async def test_concurrent_cancels_refund_once(booking_service, gateway, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=72))

    results = await asyncio.gather(
        booking_service.cancel(confirmed.booking.id, user_id="user-1"),
        booking_service.cancel(confirmed.booking.id, user_id="user-1"),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, CancellationResult)]
    refused = [r for r in results if isinstance(r, (InvalidStatusTransitionError, ConcurrencyError))]
    assert len(succeeded) == 1
    assert len(refused) == 1
    assert len(gateway.refunds) == 1


async def test_refund_failure_is_retried_later(booking_service, gateway, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=72))
    gateway.fail_refund = True

    result = await booking_service.cancel(confirmed.booking.id, user_id="user-1")
    assert result.booking.status == BookingStatus.CANCELLED
    assert result.booking.payment_status == PaymentStatus.REFUND_PENDING
    assert result.booking.refund_ref is None

    gateway.fail_refund = False
    assert await booking_service.retry_pending_refunds() == 1

    booking = await booking_service.get_booking(confirmed.booking.id)
    assert booking.refund_ref is not None
    assert await booking_service.retry_pending_refunds() == 0


async def test_cancel_is_scoped_to_owner(booking_service, confirmed):
    with pytest.raises(BookingNotFoundError):
        await booking_service.cancel(confirmed.booking.id, user_id="someone-else")


# ----------------------------------------------------------------------
# Modification
# ----------------------------------------------------------------------

async def test_modify_dates_moves_allocation(booking_service, ledger, confirmed):
    new_in, new_out = CHECK_IN + timedelta(days=1), CHECK_OUT + timedelta(days=2)

    result = await booking_service.modify(
        confirmed.booking.id, BookingChanges(check_in=new_in, check_out=new_out), user_id="user-1"
    )

    booking = result.booking
    assert booking.status == BookingStatus.MODIFIED
    assert (booking.check_in, booking.check_out) == (new_in, new_out)
    assert booking.total_amount == Decimal("300.00")
    assert result.terms.change_fee == Decimal("25.00")
    assert booking.hold_id != confirmed.booking.hold_id
    assert (await ledger.get_hold(booking.hold_id)).status == HoldStatus.ALLOCATED
    assert (await ledger.get_hold(confirmed.booking.hold_id)).status == HoldStatus.RELEASED
    assert await ledger.is_available("R1", DateRange(CHECK_IN, new_in))
    assert not await ledger.is_available("R1", DateRange(new_in, new_out))


async def test_modify_guest_count_only(booking_service, confirmed):
    result = await booking_service.modify(confirmed.booking.id, BookingChanges(guest_count=3))

    assert result.booking.guest_count == 3
    assert result.booking.hold_id == confirmed.booking.hold_id
    assert result.terms.price_delta == Decimal("0.00")


async def test_modify_without_changes_is_invalid(booking_service, confirmed):
    with pytest.raises(ValidationError):
        await booking_service.modify(confirmed.booking.id, BookingChanges(guest_count=2))


async def test_modify_inside_cutoff_carries_terms(booking_service, clock, confirmed):
    clock.set(CHECK_IN - timedelta(hours=12))

    with pytest.raises(ModificationNotAllowedError) as exc_info:
        await booking_service.modify(confirmed.booking.id, BookingChanges(guest_count=3))

    assert exc_info.value.details["terms"]["allowed"] is False


async def test_modify_pending_booking_is_refused(booking_service, make_request):
    created = await booking_service.create_booking(make_request())

    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        await booking_service.modify(created.booking.id, BookingChanges(guest_count=3))

    assert exc_info.value.current_status == "pending"
    terms = exc_info.value.details["terms"]
    assert terms["change_fee"] == "25.00"
    assert terms["price_delta"] == "0.00"


async def test_modify_cancelled_booking_is_refused_with_terms(booking_service, confirmed):
    await booking_service.cancel(confirmed.booking.id, user_id="user-1")

    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        await booking_service.modify(
            confirmed.booking.id, BookingChanges(check_out=CHECK_OUT + timedelta(days=1)), user_id="user-1"
        )

    assert exc_info.value.current_status == "cancelled"
    assert exc_info.value.details["terms"]["price_delta"] == "100.00"


async def test_modify_into_taken_dates_keeps_original(booking_service, ledger, make_request, confirmed):
    await booking_service.create_booking(
        make_request(user_id="user-2", check_in=CHECK_OUT, check_out=CHECK_OUT + timedelta(days=2))
    )

    with pytest.raises(NotAvailableError):
        await booking_service.modify(
            confirmed.booking.id, BookingChanges(check_out=CHECK_OUT + timedelta(days=1))
        )

    booking = await booking_service.get_booking(confirmed.booking.id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.check_out == CHECK_OUT
    assert (await ledger.get_hold(booking.hold_id)).status == HoldStatus.ALLOCATED


async def test_modify_racing_a_new_booking(booking_service, make_request, confirmed):
    new_in, new_out = CHECK_IN + timedelta(days=1), CHECK_OUT + timedelta(days=1)

    results = await asyncio.gather(
        booking_service.modify(confirmed.booking.id, BookingChanges(check_in=new_in, check_out=new_out)),
        booking_service.create_booking(make_request(user_id="user-2", check_in=new_in, check_out=new_out)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, BaseException)]
    assert len(succeeded) == 1
    assert isinstance(succeeded[0], ModificationResult)
    assert isinstance(results[1], NotAvailableError)


# ----------------------------------------------------------------------
# Completion and queries
# ----------------------------------------------------------------------

async def test_complete_only_after_check_out(booking_service, clock, confirmed):
    with pytest.raises(ValidationError):
        await booking_service.complete(confirmed.booking.id)

    clock.set(CHECK_OUT + timedelta(hours=1))
    assert await booking_service.complete_finished_stays() == 1
    assert (await booking_service.get_booking(confirmed.booking.id)).status == BookingStatus.COMPLETED


async def test_get_booking_scoped_to_owner(booking_service, confirmed):
    assert (await booking_service.get_booking(confirmed.booking.id, "user-1")).id == confirmed.booking.id

    with pytest.raises(BookingNotFoundError):
        await booking_service.get_booking(confirmed.booking.id, "user-2")
    with pytest.raises(BookingNotFoundError):
        await booking_service.get_booking("not-a-uuid")


async def test_list_user_bookings_filters_by_status(booking_service, make_request, confirmed):
    await booking_service.create_booking(make_request(resource_id="R2"))

    assert len(await booking_service.list_user_bookings("user-1")) == 2
    confirmed_only = await booking_service.list_user_bookings("user-1", statuses=[BookingStatus.CONFIRMED])
    assert [b.id for b in confirmed_only] == [confirmed.booking.id]
    assert await booking_service.list_user_bookings("user-2") == []
