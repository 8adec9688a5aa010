"""
Payment gateway adapter.

``PaymentGateway`` is the boundary the booking service talks to;
``StripePaymentGateway`` implements it with the Stripe SDK. Transient
failures are retried here, through the circuit breaker, and nowhere else.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import stripe

from ..config import Settings, get_settings
from ..utils.circuit_breaker import CircuitBreaker, get_payment_circuit_breaker
from ..utils.exceptions import GatewayError, GatewayRequestRejected
from ..utils.retry import RetryConfig, retry_with_circuit_breaker

logger = logging.getLogger(__name__)

# Stripe errors worth another attempt with the same idempotency key
RETRYABLE_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the gateway's integer representation."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    client_secret: Optional[str]
    status: str


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: Optional[Decimal] = None


class PaymentGateway(Protocol):
    """Operations the booking engine needs from a payment processor."""

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        ...

    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> RefundResult:
        ...

    async def cancel_intent(self, intent_id: str, idempotency_key: Optional[str] = None) -> PaymentIntent:
        ...


class StripePaymentGateway:
    """Stripe client: amounts in minor units, one idempotency key per logical call."""

    service_name = "stripe"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = 15.0,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[stripe.StripeClient] = None
    ):
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=8.0)
        self.circuit_breaker = circuit_breaker or get_payment_circuit_breaker(timeout=timeout + 5)
        self._http_client: Optional[stripe.HTTPXClient] = None

        if client is None:
            self._http_client = stripe.HTTPXClient(timeout=timeout)
            client = stripe.StripeClient(
                api_key,
                base_addresses={"api": api_base} if api_base else {},
                # Retries happen in retry_with_circuit_breaker
                max_network_retries=0,
                http_client=self._http_client,
            )
        self._client = client

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "StripePaymentGateway":
        settings = settings or get_settings()
        return cls(
            api_key=settings.stripe_api_key,
            api_base=settings.stripe_api_base,
            timeout=settings.gateway_timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=settings.gateway_max_retry_attempts,
                base_delay=settings.gateway_retry_base_delay,
                max_delay=8.0,
            ),
            circuit_breaker=get_payment_circuit_breaker(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                recovery_timeout=settings.circuit_breaker_recovery_timeout,
                timeout=settings.gateway_timeout_seconds + 5,
            ),
        )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        params = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": {key: str(value) for key, value in metadata.items()},
        }

        intent = await self._call(
            "create_intent",
            lambda: self._client.payment_intents.create_async(
                params=params, options=self._options(idempotency_key)
            ),
        )
        logger.info("Payment intent %s created", intent.id)
        return PaymentIntent(
            intent_id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            status=getattr(intent, "status", None) or "requires_payment_method",
        )

    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> RefundResult:
        """Refund ``amount`` (the full charge when None) of a payment intent."""
        params: Dict[str, Any] = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount, currency or "EUR")
        if metadata:
            params["metadata"] = {key: str(value) for key, value in metadata.items()}

        refund = await self._call(
            "refund",
            lambda: self._client.refunds.create_async(
                params=params, options=self._options(idempotency_key)
            ),
        )
        logger.info("Refund %s requested for intent %s", refund.id, intent_id)

        refunded = getattr(refund, "amount", None)
        return RefundResult(
            refund_id=refund.id,
            status=getattr(refund, "status", None) or "pending",
            amount=from_minor_units(refunded, getattr(refund, "currency", None) or currency or "EUR")
            if refunded is not None else amount,
        )

    async def cancel_intent(self, intent_id: str, idempotency_key: Optional[str] = None) -> PaymentIntent:
        intent = await self._call(
            "cancel_intent",
            lambda: self._client.payment_intents.cancel_async(
                intent_id, options=self._options(idempotency_key)
            ),
        )
        logger.info("Payment intent %s canceled", intent_id)
        return PaymentIntent(
            intent_id=getattr(intent, "id", None) or intent_id,
            client_secret=None,
            status=getattr(intent, "status", None) or "canceled",
        )

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> Dict[str, str]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    async def _call(self, operation: str, request: Callable[[], Awaitable[Any]]) -> Any:
        async def send():
            try:
                return await request()
            except RETRYABLE_STRIPE_ERRORS as e:
                raise GatewayError(
                    self.service_name,
                    f"{operation} failed: {e.user_message or e.__class__.__name__}",
                    status_code=e.http_status,
                ) from e
            except stripe.StripeError as e:
                raise GatewayRequestRejected(
                    self.service_name,
                    e.user_message or str(e),
                    status_code=e.http_status,
                ) from e

        send.__name__ = operation
        return await retry_with_circuit_breaker(send, self.circuit_breaker, self.retry_config)
