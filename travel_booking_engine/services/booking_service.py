"""
Booking service: owns the booking lifecycle and orchestrates the availability
ledger and the payment gateway.

Every step runs in its own short transaction. Each status change is planned
by ``state_machine.plan_transition`` and committed as a compare-and-set on
``bookings.version``, so a second transition racing the first is rejected
with a concurrency conflict instead of being queued.
"""

import enum
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Union
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..config import Settings, get_settings
from ..database import is_lock_contention
from ..models.base import utcnow
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.booking_history import BookingStatusHistory
from ..utils.date_range import DateRange, as_utc
from ..utils.exceptions import (
    BookingNotFoundError,
    GatewayError,
    HoldExpiredError,
    HoldNotFoundError,
    InvalidStatusTransitionError,
    ModificationNotAllowedError,
    OptimisticLockError,
    ValidationError,
)
from ..utils.logging_config import log_business_event
from .availability_ledger import AvailabilityLedger
from .payment_gateway import PaymentGateway, PaymentIntent, RefundResult
from .policy_evaluator import (
    CancellationTerms,
    ModificationTerms,
    evaluate_cancellation,
    evaluate_modification,
)
from .policy_provider import PolicyProvider
from .state_machine import AuditEntry, Transition, can_transition, plan_transition

logger = logging.getLogger(__name__)

BookingId = Union[UUID, str]

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

SYSTEM_ACTOR = "system"
WEBHOOK_ACTOR = "payment_webhook"


@dataclass
class BookingRequest:
    resource_id: str
    user_id: str
    check_in: datetime
    check_out: datetime
    guest_count: int
    total_amount: Decimal
    currency: str


@dataclass
class BookingChanges:
    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None
    guest_count: Optional[int] = None


@dataclass
class BookingCreated:
    booking: Booking
    payment_intent: PaymentIntent


class ConfirmationOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    # Payment arrived after the hold lapsed: booking failed, payment refunded
    HOLD_EXPIRED = "hold_expired"
    # Payment arrived for a booking that was cancelled or failed for another reason
    LATE_PAYMENT_REFUNDED = "late_payment_refunded"


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    booking: Booking
    refund: Optional[RefundResult] = None


@dataclass
class ModificationResult:
    booking: Booking
    terms: ModificationTerms


@dataclass
class CancellationResult:
    booking: Booking
    terms: CancellationTerms
    refund: Optional[RefundResult] = None


def _as_uuid(booking_id: BookingId) -> UUID:
    if isinstance(booking_id, UUID):
        return booking_id
    try:
        return UUID(str(booking_id))
    except ValueError:
        raise BookingNotFoundError(str(booking_id))


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_confirmation_number(now: datetime) -> str:
    """Short human-readable reference, e.g. ``TB-LX3K9Q2A-7F1C``."""
    return f"TB-{_base36(int(now.timestamp() * 1000))}-{secrets.token_hex(2).upper()}"


class BookingService:
    """Booking lifecycle orchestration."""

    _EXPIRED_REASON = "Hold expired before payment was confirmed"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: AvailabilityLedger,
        gateway: PaymentGateway,
        policy_provider: PolicyProvider,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.gateway = gateway
        self.policy_provider = policy_provider
        self.clock = clock
        self.settings = settings or get_settings()

    @property
    def hold_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.hold_ttl_minutes)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_booking(self, request: BookingRequest) -> BookingCreated:
        """
        Hold the resource, persist a pending booking and open a payment intent.

        Raises:
            ValidationError: Invalid request
            NotAvailableError: Overlapping hold or allocation; nothing is persisted
            GatewayError: The payment intent could not be created; the hold is
                released and the booking is kept as ``failed``
        """
        now = self.clock()
        date_range = self._validate_request(request, now)
        currency = request.currency.upper()

        booking_id = uuid4()
        hold = await self.ledger.try_hold(request.resource_id, date_range, booking_id, self.hold_ttl)

        booking = Booking(
            id=booking_id,
            resource_id=request.resource_id,
            user_id=request.user_id,
            check_in=date_range.check_in,
            check_out=date_range.check_out,
            guest_count=request.guest_count,
            total_amount=request.total_amount,
            currency=currency,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            hold_id=hold.id,
            expires_at=hold.expires_at,
            created_at=now,
            updated_at=now,
        )
        self._append_history(
            booking,
            AuditEntry(status=BookingStatus.PENDING, actor=request.user_id, reason="Booking requested", at=now),
            initial=True,
        )

        try:
            async with self.session_factory() as session:
                session.add(booking)
                await session.commit()
        except Exception:
            await self.ledger.release(hold.id)
            raise

        logger.info("Booking %s created as pending (hold %s)", booking_id, hold.id)

        try:
            intent = await self.gateway.create_intent(
                amount=booking.total_amount,
                currency=currency,
                metadata={
                    "bookingId": str(booking_id),
                    "userId": request.user_id,
                    "resourceId": request.resource_id,
                },
                idempotency_key=f"intent-{booking_id}",
            )
        except GatewayError as e:
            logger.error("Payment intent creation failed for booking %s: %s", booking_id, e.message)
            await self.ledger.release(hold.id)
            await self._transition(
                booking_id,
                BookingStatus.FAILED,
                SYSTEM_ACTOR,
                "Payment intent creation failed",
                mutate=lambda b: setattr(b, "failure_reason", e.message),
            )
            raise

        booking = await self._attach_intent(booking_id, intent.intent_id)

        log_business_event(
            "booking_created",
            {
                "booking_id": str(booking_id),
                "resource_id": request.resource_id,
                "amount": str(booking.total_amount),
                "currency": currency,
            },
            user_id=request.user_id,
        )
        return BookingCreated(booking=booking, payment_intent=intent)

    def _validate_request(self, request: BookingRequest, now: datetime) -> DateRange:
        errors = {}

        if not request.resource_id or not request.resource_id.strip():
            errors["resource_id"] = ["resource_id is required"]

        check_in = as_utc(request.check_in)
        check_out = as_utc(request.check_out)
        if check_out <= check_in:
            errors["check_out"] = ["check_out must be after check_in"]
        if check_in < now:
            errors["check_in"] = ["check_in must not be in the past"]

        self._validate_guest_count(request.guest_count, errors)

        amount = Decimal(request.total_amount)
        if amount <= 0:
            errors["total_amount"] = ["total_amount must be greater than zero"]
        elif amount.as_tuple().exponent < -2:
            errors["total_amount"] = ["total_amount has more than two decimal places"]

        if not _CURRENCY_RE.match((request.currency or "").upper()):
            errors["currency"] = ["currency must be a three-letter ISO 4217 code"]

        if errors:
            raise ValidationError("Invalid booking request", field_errors=errors)

        return DateRange(check_in, check_out)

    def _validate_guest_count(self, guest_count: int, errors: dict) -> None:
        if not 1 <= guest_count <= self.settings.max_guest_count:
            errors["guest_count"] = [
                f"guest_count must be between 1 and {self.settings.max_guest_count}"
            ]

    async def _attach_intent(self, booking_id: UUID, intent_id: str) -> Booking:
        async with self.session_factory() as session:
            await session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.payment_intent_ref.is_(None))
                .values(
                    payment_intent_ref=intent_id,
                    version=Booking.version + 1,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return await self._load(session, booking_id)

    # ------------------------------------------------------------------
    # Payment reconciliation (called by the webhook dispatcher)
    # ------------------------------------------------------------------

    async def confirm(self, booking_id: BookingId, payment_intent_ref: str) -> ConfirmationResult:
        """
        Apply a successful payment.

        A live hold becomes an allocation and the booking is confirmed. A
        payment that arrives after the hold lapsed fails the booking and is
        refunded in full; it is never silently confirmed.
        """
        booking_id = _as_uuid(booking_id)
        booking = await self._get(booking_id)
        self._check_intent(booking, payment_intent_ref)

        if booking.confirmation_number is not None:
            logger.info("Booking %s already confirmed; ignoring redelivered payment", booking_id)
            return ConfirmationResult(ConfirmationOutcome.ALREADY_CONFIRMED, booking)

        if booking.status == BookingStatus.FAILED:
            outcome = (
                ConfirmationOutcome.HOLD_EXPIRED
                if booking.failure_reason == self._EXPIRED_REASON
                else ConfirmationOutcome.LATE_PAYMENT_REFUNDED
            )
            return await self._refund_late_payment(booking, payment_intent_ref, outcome)

        if booking.status == BookingStatus.CANCELLED:
            return await self._refund_late_payment(
                booking, payment_intent_ref, ConfirmationOutcome.LATE_PAYMENT_REFUNDED
            )

        if booking.status != BookingStatus.PENDING:
            raise InvalidStatusTransitionError(
                str(booking_id), booking.status.value, BookingStatus.CONFIRMED.value
            )

        try:
            if booking.is_expired(self.clock()) or booking.hold_id is None:
                raise HoldExpiredError(str(booking.hold_id), str(booking_id))
            await self.ledger.confirm_hold(booking.hold_id)
        except (HoldExpiredError, HoldNotFoundError):
            booking = await self._expire_pending(
                booking_id,
                expected_version=booking.version,
                payment_status=PaymentStatus.REFUND_PENDING,
            )
            return await self._refund_late_payment(
                booking, payment_intent_ref, ConfirmationOutcome.HOLD_EXPIRED
            )

        now = self.clock()

        def mark_confirmed(b: Booking) -> None:
            b.payment_status = PaymentStatus.SUCCEEDED
            b.amount_paid = b.total_amount
            b.payment_intent_ref = b.payment_intent_ref or payment_intent_ref
            b.confirmation_number = generate_confirmation_number(now)
            b.expires_at = None

        booking = await self._transition(
            booking_id,
            BookingStatus.CONFIRMED,
            WEBHOOK_ACTOR,
            "Payment succeeded",
            expected_version=booking.version,
            mutate=mark_confirmed,
        )

        log_business_event(
            "booking_confirmed",
            {"booking_id": str(booking_id), "confirmation_number": booking.confirmation_number},
            user_id=booking.user_id,
        )
        return ConfirmationResult(ConfirmationOutcome.CONFIRMED, booking)

    async def _refund_late_payment(
        self,
        booking: Booking,
        payment_intent_ref: str,
        outcome: ConfirmationOutcome
    ) -> ConfirmationResult:
        if booking.refund_ref is not None or booking.payment_status == PaymentStatus.REFUNDED:
            return ConfirmationResult(outcome, booking)

        refund = await self.gateway.refund(
            intent_id=payment_intent_ref,
            amount=None,
            currency=booking.currency,
            metadata={"bookingId": str(booking.id), "reason": outcome.value},
            idempotency_key=f"refund-{booking.id}",
        )

        def mark_refund_requested(b: Booking) -> None:
            b.payment_intent_ref = b.payment_intent_ref or payment_intent_ref
            b.refund_ref = refund.refund_id
            b.refund_amount = refund.amount if refund.amount is not None else b.total_amount
            if b.payment_status != PaymentStatus.REFUNDED:
                b.payment_status = PaymentStatus.REFUND_PENDING

        booking = await self._update(booking.id, mark_refund_requested)

        logger.warning(
            "Late payment %s for booking %s refunded (%s)", payment_intent_ref, booking.id, outcome.value
        )
        log_business_event(
            "late_payment_refunded",
            {"booking_id": str(booking.id), "outcome": outcome.value, "refund_id": refund.refund_id},
            user_id=booking.user_id,
        )
        return ConfirmationResult(outcome, booking, refund)

    async def fail(
        self,
        booking_id: BookingId,
        reason: str,
        actor: str = WEBHOOK_ACTOR,
        payment_status: PaymentStatus = PaymentStatus.FAILED,
        payment_intent_ref: Optional[str] = None
    ) -> Booking:
        """Fail a pending booking (payment failed or canceled) and release its hold."""
        booking_id = _as_uuid(booking_id)
        booking = await self._get(booking_id)
        if payment_intent_ref:
            self._check_intent(booking, payment_intent_ref)

        def mark_failed(b: Booking) -> None:
            b.payment_status = payment_status
            b.failure_reason = reason
            b.expires_at = None

        booking = await self._transition(
            booking_id,
            BookingStatus.FAILED,
            actor,
            reason,
            expected_version=booking.version,
            mutate=mark_failed,
        )
        await self.ledger.release(booking.hold_id)

        log_business_event(
            "booking_failed",
            {"booking_id": str(booking_id), "failure_reason": reason},
            user_id=booking.user_id,
        )
        return booking

    async def record_refund(
        self,
        booking_id: BookingId,
        refund_id: str,
        amount: Optional[Decimal] = None,
        payment_intent_ref: Optional[str] = None
    ) -> Booking:
        """Store a refund reported by the gateway. Idempotent per refund id."""
        booking_id = _as_uuid(booking_id)
        booking = await self._get(booking_id)
        if payment_intent_ref:
            self._check_intent(booking, payment_intent_ref)

        if booking.payment_status == PaymentStatus.REFUNDED and booking.refund_ref == refund_id:
            return booking

        def mark_refunded(b: Booking) -> None:
            b.refund_ref = refund_id
            if amount is not None:
                b.refund_amount = amount
            b.payment_status = PaymentStatus.REFUNDED

        booking = await self._update(booking_id, mark_refunded, expected_version=booking.version)
        log_business_event(
            "refund_recorded",
            {"booking_id": str(booking_id), "refund_id": refund_id, "amount": str(booking.refund_amount)},
            user_id=booking.user_id,
        )
        return booking

    def _check_intent(self, booking: Booking, payment_intent_ref: Optional[str]) -> None:
        if (
            payment_intent_ref
            and booking.payment_intent_ref
            and booking.payment_intent_ref != payment_intent_ref
        ):
            raise ValidationError(
                f"Payment intent {payment_intent_ref} does not belong to booking {booking.id}",
                field_errors={"payment_intent_ref": ["does not match the booking"]},
            )

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------

    async def modify(
        self,
        booking_id: BookingId,
        changes: BookingChanges,
        actor: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> ModificationResult:
        """
        Change the dates and/or guest count of a confirmed booking.

        A new date range is held and allocated before the old allocation is
        released, so the resource never looks free in between.

        Raises:
            InvalidStatusTransitionError: Booking is not confirmed or modified (carries the terms)
            ModificationNotAllowedError: Policy cutoff passed (carries the terms)
            NotAvailableError: New dates overlap another booking
        """
        booking_id = _as_uuid(booking_id)
        booking = await self._get(booking_id, user_id)
        now = self.clock()

        new_range = self._resolve_new_range(booking, changes, now)
        guest_count = changes.guest_count if changes.guest_count is not None else booking.guest_count
        errors = {}
        self._validate_guest_count(guest_count, errors)
        if errors:
            raise ValidationError("Invalid modification", field_errors=errors)

        policy = await self.policy_provider.get_policy(booking.resource_id)
        terms = evaluate_modification(booking, policy, now, new_range)

        if not can_transition(booking.status, BookingStatus.MODIFIED):
            raise InvalidStatusTransitionError(
                str(booking_id),
                booking.status.value,
                BookingStatus.MODIFIED.value,
                terms=terms.to_dict(),
            )
        if new_range is None and guest_count == booking.guest_count:
            raise ValidationError("No changes requested")
        if not terms.allowed:
            raise ModificationNotAllowedError(str(booking_id), terms.reason, terms.to_dict())

        old_hold_id = booking.hold_id
        new_hold_id = None
        if new_range is not None:
            hold = await self.ledger.try_hold(booking.resource_id, new_range, booking_id, self.hold_ttl)
            new_hold_id = hold.id
            try:
                await self.ledger.confirm_hold(new_hold_id)
            except (HoldExpiredError, HoldNotFoundError):
                await self.ledger.release(new_hold_id)
                raise

        def apply_changes(b: Booking) -> None:
            if new_range is not None:
                b.check_in = new_range.check_in
                b.check_out = new_range.check_out
                b.hold_id = new_hold_id
            b.guest_count = guest_count
            b.total_amount = terms.new_total

        try:
            booking = await self._transition(
                booking_id,
                BookingStatus.MODIFIED,
                actor or booking.user_id,
                self._describe_changes(new_range, guest_count, booking),
                expected_version=booking.version,
                mutate=apply_changes,
            )
        except Exception:
            if new_hold_id is not None:
                await self.ledger.release(new_hold_id)
            raise

        if new_hold_id is not None and old_hold_id != new_hold_id:
            await self.ledger.release(old_hold_id)

        log_business_event(
            "booking_modified",
            {
                "booking_id": str(booking_id),
                "change_fee": str(terms.change_fee),
                "price_delta": str(terms.price_delta),
            },
            user_id=booking.user_id,
        )
        return ModificationResult(booking=booking, terms=terms)

    def _resolve_new_range(self, booking: Booking, changes: BookingChanges, now: datetime) -> Optional[DateRange]:
        if changes.check_in is None and changes.check_out is None:
            return None

        check_in = as_utc(changes.check_in) if changes.check_in else booking.check_in
        check_out = as_utc(changes.check_out) if changes.check_out else booking.check_out

        errors = {}
        if check_out <= check_in:
            errors["check_out"] = ["check_out must be after check_in"]
        if check_in < now:
            errors["check_in"] = ["check_in must not be in the past"]
        if errors:
            raise ValidationError("Invalid modification", field_errors=errors)

        if check_in == booking.check_in and check_out == booking.check_out:
            return None
        return DateRange(check_in, check_out)

    @staticmethod
    def _describe_changes(new_range: Optional[DateRange], guest_count: int, booking: Booking) -> str:
        parts = []
        if new_range is not None:
            parts.append(f"dates {new_range}")
        if guest_count != booking.guest_count:
            parts.append(f"guests {booking.guest_count}->{guest_count}")
        return "Modified " + ", ".join(parts)

    async def cancel(
        self,
        booking_id: BookingId,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> CancellationResult:
        """
        Cancel a booking and refund what the policy allows.

        The cancellation is committed before any side effect, so of two
        concurrent cancels exactly one releases the hold and refunds. The
        refund uses one idempotency key per booking.

        Raises:
            InvalidStatusTransitionError: Booking already terminal (carries the terms)
        """
        booking_id = _as_uuid(booking_id)
        booking = await self._get(booking_id, user_id)
        now = self.clock()

        policy = await self.policy_provider.get_policy(booking.resource_id)
        terms = evaluate_cancellation(booking, policy, now)

        if not can_transition(booking.status, BookingStatus.CANCELLED):
            raise InvalidStatusTransitionError(
                str(booking_id),
                booking.status.value,
                BookingStatus.CANCELLED.value,
                terms=terms.to_dict(),
            )

        was_pending = booking.status == BookingStatus.PENDING
        if was_pending:
            # Nothing captured yet: the open intent is cancelled instead
            terms = CancellationTerms(
                refund_eligible=False,
                refund_amount=Decimal("0.00"),
                refund_percentage=Decimal("0"),
                hours_until_check_in=terms.hours_until_check_in,
            )
        refund_due = (
            not was_pending
            and terms.refund_eligible
            and booking.payment_status == PaymentStatus.SUCCEEDED
        )

        def mark_cancelled(b: Booking) -> None:
            b.cancellation_reason = reason
            b.expires_at = None
            if refund_due:
                b.payment_status = PaymentStatus.REFUND_PENDING
                b.refund_amount = terms.refund_amount

        booking = await self._transition(
            booking_id,
            BookingStatus.CANCELLED,
            actor or booking.user_id,
            reason or "Cancelled by user",
            expected_version=booking.version,
            mutate=mark_cancelled,
        )
        await self.ledger.release(booking.hold_id)

        refund = None
        if was_pending and booking.payment_intent_ref:
            await self._cancel_open_intent(booking)
        elif refund_due:
            try:
                refund, booking = await self._issue_refund(booking, terms.refund_amount)
            except GatewayError as e:
                # Stays refund_pending; retry_pending_refunds picks it up
                logger.error("Refund for cancelled booking %s failed: %s", booking_id, e.message)

        log_business_event(
            "booking_cancelled",
            {
                "booking_id": str(booking_id),
                "refund_amount": str(terms.refund_amount),
                "refund_percentage": str(terms.refund_percentage),
            },
            user_id=booking.user_id,
        )
        return CancellationResult(booking=booking, terms=terms, refund=refund)

    async def _cancel_open_intent(self, booking: Booking) -> None:
        try:
            await self.gateway.cancel_intent(
                booking.payment_intent_ref, idempotency_key=f"cancel-{booking.id}"
            )
        except GatewayError as e:
            # A payment that still goes through is refunded when its webhook arrives
            logger.warning(
                "Could not cancel payment intent %s of booking %s: %s",
                booking.payment_intent_ref, booking.id, e.message
            )

    async def _issue_refund(self, booking: Booking, amount: Decimal):
        if booking.amount_paid is not None:
            amount = min(amount, booking.amount_paid)
        refund = await self.gateway.refund(
            intent_id=booking.payment_intent_ref,
            amount=amount,
            currency=booking.currency,
            metadata={"bookingId": str(booking.id), "reason": "cancellation"},
            idempotency_key=f"refund-{booking.id}",
        )

        def mark_refund_requested(b: Booking) -> None:
            b.refund_ref = refund.refund_id

        booking = await self._update(booking.id, mark_refund_requested)
        return refund, booking

    async def complete(self, booking_id: BookingId, actor: str = SYSTEM_ACTOR) -> Booking:
        """Mark a confirmed or modified booking completed once check-out has passed."""
        booking_id = _as_uuid(booking_id)
        booking = await self._get(booking_id)

        if booking.check_out > self.clock():
            raise ValidationError(
                f"Booking {booking_id} cannot be completed before check-out",
                field_errors={"check_out": ["stay has not finished"]},
            )

        booking = await self._transition(
            booking_id,
            BookingStatus.COMPLETED,
            actor,
            "Stay completed",
            expected_version=booking.version,
        )
        log_business_event("booking_completed", {"booking_id": str(booking_id)}, user_id=booking.user_id)
        return booking

    async def get_booking(self, booking_id: BookingId, user_id: Optional[str] = None) -> Booking:
        """Load a booking, failing it first if its hold lapsed without payment."""
        booking = await self._get(_as_uuid(booking_id), user_id)
        return await self._apply_lazy_expiry(booking)

    async def list_user_bookings(
        self,
        user_id: str,
        statuses: Optional[Sequence[BookingStatus]] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Booking]:
        query = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if statuses:
            query = query.where(Booking.status.in_(list(statuses)))

        async with self.session_factory() as session:
            bookings = list((await session.scalars(query)).all())

        return [await self._apply_lazy_expiry(booking) for booking in bookings]

    # ------------------------------------------------------------------
    # Sweeps (periodic tasks)
    # ------------------------------------------------------------------

    async def expire_stale_bookings(self, limit: Optional[int] = None) -> int:
        """Fail pending bookings whose hold lapsed and sweep lapsed holds."""
        limit = limit or self.settings.sweep_batch_size
        now = self.clock()

        async with self.session_factory() as session:
            rows = (await session.execute(
                select(Booking.id, Booking.version)
                .where(Booking.status == BookingStatus.PENDING, Booking.expires_at <= now)
                .order_by(Booking.expires_at)
                .limit(limit)
            )).all()

        expired = 0
        for booking_id, version in rows:
            try:
                await self._expire_pending(booking_id, expected_version=version)
                expired += 1
            except (OptimisticLockError, InvalidStatusTransitionError) as e:
                logger.info("Skipping expiry of booking %s: %s", booking_id, e.message)

        swept = await self.ledger.sweep_expired(limit)
        if expired or swept:
            logger.info("Expired %d pending bookings and %d holds", expired, swept)
        return expired

    async def complete_finished_stays(self, limit: Optional[int] = None) -> int:
        limit = limit or self.settings.sweep_batch_size
        now = self.clock()

        async with self.session_factory() as session:
            booking_ids = list(await session.scalars(
                select(Booking.id)
                .where(
                    Booking.status.in_((BookingStatus.CONFIRMED, BookingStatus.MODIFIED)),
                    Booking.check_out <= now,
                )
                .limit(limit)
            ))

        completed = 0
        for booking_id in booking_ids:
            try:
                await self.complete(booking_id)
                completed += 1
            except (OptimisticLockError, InvalidStatusTransitionError) as e:
                logger.info("Skipping completion of booking %s: %s", booking_id, e.message)
        return completed

    async def retry_pending_refunds(self, limit: Optional[int] = None) -> int:
        """Re-issue refunds of cancelled bookings whose refund request never reached the gateway."""
        limit = limit or self.settings.sweep_batch_size

        async with self.session_factory() as session:
            bookings = list(await session.scalars(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.CANCELLED,
                    Booking.payment_status == PaymentStatus.REFUND_PENDING,
                    Booking.refund_ref.is_(None),
                )
                .limit(limit)
            ))

        issued = 0
        for booking in bookings:
            try:
                await self._issue_refund(booking, booking.refund_amount)
                issued += 1
            except GatewayError as e:
                logger.error("Refund retry for booking %s failed: %s", booking.id, e.message)
        return issued

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _apply_lazy_expiry(self, booking: Booking) -> Booking:
        if not booking.is_expired(self.clock()):
            return booking
        try:
            return await self._expire_pending(booking.id, expected_version=booking.version)
        except (OptimisticLockError, InvalidStatusTransitionError):
            return await self._get(booking.id)

    async def _expire_pending(
        self,
        booking_id: UUID,
        expected_version: Optional[int] = None,
        payment_status: Optional[PaymentStatus] = None
    ) -> Booking:
        def mark_expired(b: Booking) -> None:
            b.failure_reason = self._EXPIRED_REASON
            b.expires_at = None
            if payment_status is not None:
                b.payment_status = payment_status

        booking = await self._transition(
            booking_id,
            BookingStatus.FAILED,
            SYSTEM_ACTOR,
            self._EXPIRED_REASON,
            expected_version=expected_version,
            mutate=mark_expired,
        )
        await self.ledger.release(booking.hold_id)
        log_business_event("booking_expired", {"booking_id": str(booking_id)}, user_id=booking.user_id)
        return booking

    async def _get(self, booking_id: UUID, user_id: Optional[str] = None) -> Booking:
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id)
        if user_id is not None and booking.user_id != user_id:
            raise BookingNotFoundError(str(booking_id))
        return booking

    @staticmethod
    async def _load(session: AsyncSession, booking_id: UUID) -> Booking:
        booking = await session.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        return booking

    @staticmethod
    def _append_history(booking: Booking, entry: AuditEntry, initial: bool = False) -> None:
        sequence = 1 if initial else len(booking.status_history) + 1
        booking.status_history.append(
            BookingStatusHistory(
                sequence=sequence,
                status=entry.status,
                actor=entry.actor,
                reason=entry.reason,
                created_at=entry.at,
            )
        )

    def _apply(self, booking: Booking, transition: Transition) -> None:
        booking.status = transition.status
        self._append_history(booking, transition.audit_entry)

    async def _transition(
        self,
        booking_id: UUID,
        target: BookingStatus,
        actor: str,
        reason: Optional[str] = None,
        *,
        expected_version: Optional[int] = None,
        mutate: Optional[Callable[[Booking], None]] = None
    ) -> Booking:
        now = self.clock()
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id)
            if expected_version is not None and booking.version != expected_version:
                raise OptimisticLockError("booking", str(booking_id))

            transition = plan_transition(
                booking.status, target, actor, reason, now, booking_id=str(booking_id)
            )
            self._apply(booking, transition)
            if mutate is not None:
                mutate(booking)
            await self._commit(session, booking_id)

        logger.info(
            "Booking %s: %s -> %s (%s)",
            booking_id, transition.previous.value, transition.status.value, actor
        )
        return booking

    async def _update(
        self,
        booking_id: UUID,
        mutate: Callable[[Booking], None],
        expected_version: Optional[int] = None
    ) -> Booking:
        async with self.session_factory() as session:
            booking = await self._load(session, booking_id)
            if expected_version is not None and booking.version != expected_version:
                raise OptimisticLockError("booking", str(booking_id))
            mutate(booking)
            await self._commit(session, booking_id)
        return booking

    @staticmethod
    async def _commit(session: AsyncSession, booking_id: UUID) -> None:
        try:
            await session.commit()
        except StaleDataError as e:
            raise OptimisticLockError("booking", str(booking_id)) from e
        except DBAPIError as e:
            if is_lock_contention(e):
                raise OptimisticLockError("booking", str(booking_id)) from e
            raise
