"""
Celery application running the periodic reservation sweep.
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from ..config import get_settings
from ..utils.logging_config import setup_logging

settings = get_settings()

celery_app = Celery(
    "bus_booking_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "bus_booking_engine.tasks.reservation_tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A sweep never outlives its interval; the next beat tick picks up the rest
    task_time_limit=max(settings.sweep_interval_seconds, 60),
    task_soft_time_limit=max(settings.sweep_interval_seconds - 10, 50),
    task_routes={
        "sweep_expired_reservations_task": {"queue": "reservations"},
    },
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    result_expires=24 * 3600,
)

celery_app.conf.beat_schedule = {
    "sweep-expired-reservations": {
        "task": "sweep_expired_reservations_task",
        "schedule": float(settings.sweep_interval_seconds),
        # Drop ticks nobody picked up before the next one is due
        "options": {"expires": float(settings.sweep_interval_seconds)},
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    """Workers log through the same handlers and format as the API."""
    setup_logging(
        log_level=settings.log_level,
        enable_json_logging=settings.enable_json_logging or settings.environment == "production",
    )
