"""
Payment gateway webhook endpoint.
"""

import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.exc import OperationalError

from ..middleware.error_handler import error_response
from ..schemas.payment import WebhookAckResponse
from ..services.webhook_dispatcher import WebhookDispatcher
from ..utils.dependencies import get_webhook_dispatcher
from ..utils.exceptions import TRANSIENT_ERRORS, BookingEngineError, ErrorCode

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)
):
    """
    Receive a signed payment gateway event.

    Answers 200 once the event is applied, acknowledged or recognised as a
    redelivery. Invalid signatures answer 400. Transient failures answer 503
    so the gateway redelivers the event later.
    """
    payload = await request.body()

    try:
        result = await dispatcher.handle_event(payload, stripe_signature)
    except TRANSIENT_ERRORS as e:
        error_id = str(uuid4())
        logger.warning("Webhook processing deferred [%s]: %s", error_id, e.message)
        return error_response(e, status.HTTP_503_SERVICE_UNAVAILABLE, error_id)
    except OperationalError as e:
        error_id = str(uuid4())
        logger.error("Database unavailable while processing webhook [%s]: %s", error_id, e)
        unavailable = BookingEngineError(
            "Database temporarily unavailable",
            error_code=ErrorCode.INTERNAL_ERROR,
            retry_after=30,
        )
        return error_response(unavailable, status.HTTP_503_SERVICE_UNAVAILABLE, error_id)

    return WebhookAckResponse(
        event_id=result.event_id,
        event_type=result.event_type,
        outcome=result.outcome,
        duplicate=result.duplicate,
        detail=result.detail,
    )
