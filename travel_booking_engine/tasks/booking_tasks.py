"""
Celery tasks for booking expiry, stay completion, refund retries and
webhook-ledger retention.

Each task runs the async services in a fresh event loop with its own engine,
since an async engine cannot be shared across event loops.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from .celery_app import celery_app
from ..database import create_database_engine, create_session_factory
from ..services.availability_ledger import AvailabilityLedger
from ..services.booking_service import BookingService
from ..services.payment_gateway import StripePaymentGateway
from ..services.policy_provider import SettingsPolicyProvider
from ..services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


async def _with_services(work: Callable[[BookingService, WebhookDispatcher], Awaitable[Dict[str, Any]]]):
    engine = create_database_engine()
    session_factory = create_session_factory(engine)
    gateway = StripePaymentGateway.from_settings()
    try:
        booking_service = BookingService(
            session_factory,
            AvailabilityLedger(session_factory),
            gateway,
            SettingsPolicyProvider(),
        )
        dispatcher = WebhookDispatcher(session_factory, booking_service)
        return await work(booking_service, dispatcher)
    finally:
        await gateway.close()
        await engine.dispose()


def _run(work: Callable[[BookingService, WebhookDispatcher], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_with_services(work))
    finally:
        loop.close()


@celery_app.task(name="expire_stale_bookings_task")
def expire_stale_bookings_task():
    """
    Fail pending bookings whose hold lapsed without payment.

    Runs every minute. Reads expire lazily as well, so this sweep only bounds
    how long a lapsed hold stays visible in the tables.
    """
    async def _expire(booking_service, _dispatcher):
        expired = await booking_service.expire_stale_bookings()
        return {"expired_count": expired}

    try:
        return _run(_expire)
    except Exception as e:
        logger.error(f"Error in booking expiration task: {e}")
        raise


@celery_app.task(name="complete_finished_stays_task")
def complete_finished_stays_task():
    """Mark confirmed bookings completed once check-out has passed."""
    async def _complete(booking_service, _dispatcher):
        completed = await booking_service.complete_finished_stays()
        return {"completed_count": completed}

    try:
        return _run(_complete)
    except Exception as e:
        logger.error(f"Error in stay completion task: {e}")
        raise


@celery_app.task(name="retry_pending_refunds_task")
def retry_pending_refunds_task():
    """Re-issue refunds that could not reach the gateway at cancellation time."""
    async def _retry(booking_service, _dispatcher):
        issued = await booking_service.retry_pending_refunds()
        return {"refunds_issued": issued}

    try:
        return _run(_retry)
    except Exception as e:
        logger.error(f"Error in refund retry task: {e}")
        raise


@celery_app.task(name="purge_processed_events_task")
def purge_processed_events_task():
    """Drop processed webhook records older than the retention window."""
    async def _purge(_booking_service, dispatcher):
        purged = await dispatcher.purge_processed_events()
        return {"purged_count": purged}

    try:
        return _run(_purge)
    except Exception as e:
        logger.error(f"Error in processed event purge task: {e}")
        raise
