"""
Celery application configuration for background tasks.
"""

from celery import Celery
from ..config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "travel_booking_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "travel_booking_engine.tasks.booking_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Periodic tasks configuration
celery_app.conf.beat_schedule = {
    "expire-stale-bookings": {
        "task": "expire_stale_bookings_task",
        "schedule": 60.0,  # Run every minute
    },
    "retry-pending-refunds": {
        "task": "retry_pending_refunds_task",
        "schedule": 300.0,  # Run every 5 minutes
    },
    "complete-finished-stays": {
        "task": "complete_finished_stays_task",
        "schedule": 3600.0,  # Run every hour
    },
    "purge-processed-events": {
        "task": "purge_processed_events_task",
        "schedule": 3600.0,  # Run every hour
    },
}
