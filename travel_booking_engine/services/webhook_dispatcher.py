"""
Webhook reconciliation dispatcher.

Verifies signed payment gateway events and maps them onto booking service
calls. Each gateway event id is applied at most once: the processed-event
record is written only after the booking call succeeded, and transient
failures propagate so the gateway redelivers the event.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import stripe
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..models.base import utcnow
from ..models.booking import Booking, PaymentStatus
from ..models.processed_event import ProcessedPaymentEvent
from ..utils.exceptions import (
    TRANSIENT_ERRORS,
    BookingEngineError,
    BookingNotFoundError,
    GatewayRequestRejected,
    InvalidSignatureError,
    ValidationError,
)
from ..utils.logging_config import log_security_event
from .booking_service import BookingService
from .payment_gateway import from_minor_units

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_IGNORED = "ignored"
OUTCOME_REJECTED = "rejected"

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_PAYMENT_CANCELED = "payment_intent.canceled"
EVENT_REFUND_CREATED = "refund.created"


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    event_type: str
    object_id: str
    payment_intent_ref: Optional[str]
    booking_id: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    status: Optional[str]
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    duplicate: bool = False
    detail: Optional[str] = None


def parse_event(payload: bytes) -> PaymentEvent:
    """Parse ``{id, type, data: {object: {...}}}`` into a ``PaymentEvent``."""
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Webhook payload is not valid JSON: {e}")

    if not isinstance(body, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    event_id = body.get("id")
    event_type = body.get("type")
    obj = (body.get("data") or {}).get("object") if isinstance(body.get("data"), dict) else None

    errors: Dict[str, list] = {}
    if not isinstance(event_id, str) or not event_id:
        errors["id"] = ["event id is required"]
    if not isinstance(event_type, str) or not event_type:
        errors["type"] = ["event type is required"]
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), str):
        errors["data.object"] = ["event object with an id is required"]
    if errors:
        raise ValidationError("Malformed webhook event", field_errors=errors)

    metadata = obj.get("metadata") or {}
    if event_type.startswith("payment_intent."):
        intent_ref = obj["id"]
    else:
        intent_ref = obj.get("payment_intent")

    failure = obj.get("last_payment_error") or {}
    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        object_id=obj["id"],
        payment_intent_ref=intent_ref,
        booking_id=metadata.get("bookingId") if isinstance(metadata, dict) else None,
        amount=obj.get("amount"),
        currency=obj.get("currency"),
        status=obj.get("status"),
        failure_message=failure.get("message") if isinstance(failure, dict) else None,
    )


class WebhookDispatcher:
    """Applies payment gateway webhook events to bookings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        booking_service: BookingService,
        secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.booking_service = booking_service
        self.secret = secret or settings.stripe_webhook_secret
        self.tolerance_seconds = (
            settings.webhook_tolerance_seconds if tolerance_seconds is None else tolerance_seconds
        )
        self.clock = clock
        self.retention = timedelta(hours=settings.processed_event_retention_hours)

        self._handlers = {
            EVENT_PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            EVENT_PAYMENT_FAILED: self._on_payment_failed,
            EVENT_PAYMENT_CANCELED: self._on_payment_canceled,
            EVENT_REFUND_CREATED: self._on_refund_created,
        }

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> None:
        """
        Check the ``Stripe-Signature`` header of a delivery.

        Raises:
            InvalidSignatureError: Missing, malformed, stale or wrong signature
        """
        if not signature_header:
            self._reject_signature("missing signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature_header, self.secret, self.tolerance_seconds
            )
        except UnicodeDecodeError:
            self._reject_signature("payload is not UTF-8")
        except stripe.SignatureVerificationError as e:
            self._reject_signature(e.user_message or str(e))

    def _reject_signature(self, reason: str, **details: Any) -> None:
        log_security_event("webhook_signature_rejected", {"reason": reason, **details})
        raise InvalidSignatureError(f"Invalid webhook signature: {reason}")

    async def handle_event(self, payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            InvalidSignatureError: The delivery is not authentic
            ValidationError: The payload is malformed
            ConcurrencyError, GatewayError, OperationalError: Transient failure;
                nothing is recorded and the gateway should redeliver
        """
        self.verify_signature(payload, signature_header)
        event = parse_event(payload)

        if await self._is_processed(event.event_id):
            logger.info("Webhook event %s already processed", event.event_id)
            return WebhookResult(event.event_id, event.event_type, OUTCOME_APPLIED, duplicate=True)

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Ignoring unhandled webhook event type %s (%s)", event.event_type, event.event_id)
            return await self._record(event, None, OUTCOME_IGNORED)

        booking_id = None
        try:
            booking_id = await self._resolve_booking_id(event)
            detail = await handler(booking_id, event)
        except GatewayRequestRejected as e:
            logger.error("Gateway rejected follow-up of event %s: %s", event.event_id, e.message)
            return await self._record(event, booking_id, OUTCOME_REJECTED, e.error_code.value)
        except TRANSIENT_ERRORS:
            logger.warning("Transient failure applying event %s; leaving it for redelivery", event.event_id)
            raise
        except BookingEngineError as e:
            logger.warning(
                "Webhook event %s (%s) rejected: %s", event.event_id, event.event_type, e.message
            )
            return await self._record(event, booking_id, OUTCOME_REJECTED, e.error_code.value)

        return await self._record(event, booking_id, OUTCOME_APPLIED, detail)

    async def _resolve_booking_id(self, event: PaymentEvent) -> UUID:
        if event.booking_id:
            try:
                return UUID(event.booking_id)
            except ValueError:
                raise BookingNotFoundError(event.booking_id)

        if event.payment_intent_ref:
            async with self.session_factory() as session:
                booking_id = await session.scalar(
                    select(Booking.id).where(Booking.payment_intent_ref == event.payment_intent_ref)
                )
            if booking_id is not None:
                return booking_id

        raise BookingNotFoundError(event.payment_intent_ref or event.object_id)

    async def _on_payment_succeeded(self, booking_id: UUID, event: PaymentEvent) -> str:
        result = await self.booking_service.confirm(booking_id, event.payment_intent_ref)
        return result.outcome.value

    async def _on_payment_failed(self, booking_id: UUID, event: PaymentEvent) -> str:
        await self.booking_service.fail(
            booking_id,
            event.failure_message or "Payment failed",
            payment_status=PaymentStatus.FAILED,
            payment_intent_ref=event.payment_intent_ref,
        )
        return "failed"

    async def _on_payment_canceled(self, booking_id: UUID, event: PaymentEvent) -> str:
        await self.booking_service.fail(
            booking_id,
            "Payment canceled",
            payment_status=PaymentStatus.CANCELED,
            payment_intent_ref=event.payment_intent_ref,
        )
        return "canceled"

    async def _on_refund_created(self, booking_id: UUID, event: PaymentEvent) -> str:
        amount: Optional[Decimal] = None
        if event.amount is not None:
            amount = from_minor_units(event.amount, event.currency or "EUR")
        await self.booking_service.record_refund(
            booking_id,
            event.object_id,
            amount=amount,
            payment_intent_ref=event.payment_intent_ref,
        )
        return "refunded"

    async def _is_processed(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            return await session.get(ProcessedPaymentEvent, event_id) is not None

    async def _record(
        self,
        event: PaymentEvent,
        booking_id: Optional[UUID],
        outcome: str,
        detail: Optional[str] = None
    ) -> WebhookResult:
        record = ProcessedPaymentEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            payment_intent_ref=event.payment_intent_ref,
            booking_id=booking_id,
            outcome=outcome,
            processed_at=self.clock(),
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except IntegrityError:
            logger.info("Webhook event %s was recorded by a concurrent delivery", event.event_id)
            return WebhookResult(event.event_id, event.event_type, outcome, duplicate=True, detail=detail)

        logger.info(
            "Webhook event %s (%s) processed: %s%s",
            event.event_id, event.event_type, outcome, f" ({detail})" if detail else ""
        )
        return WebhookResult(event.event_id, event.event_type, outcome, detail=detail)

    async def purge_processed_events(self, older_than: Optional[timedelta] = None) -> int:
        """Delete processed-event records past the retention window."""
        cutoff = self.clock() - (older_than or self.retention)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(ProcessedPaymentEvent).where(ProcessedPaymentEvent.processed_at < cutoff)
            )
            await session.commit()

        if result.rowcount:
            logger.info("Purged %d processed webhook events older than %s", result.rowcount, cutoff.isoformat())
        return result.rowcount
