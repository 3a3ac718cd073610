"""
Celery configuration for background processing
"""

from celery import Celery

from core.config import settings

celery_app = Celery(
    "store_workers",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=10,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,
)

celery_app.conf.task_routes = {
    "workers.tasks.process_telegram_update": {"queue": "celery"},
    "workers.payment_tasks.*": {"queue": "celery"},
    "workers.sweeper_tasks.*": {"queue": "celery"},
}

celery_app.conf.beat_schedule = {
    "sweep-expired-payments": {
        "task": "workers.sweeper_tasks.sweep_expired",
        "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
    },
    "verify-pending-payments": {
        "task": "workers.payment_tasks.verify_all_pending_payments",
        "schedule": float(max(settings.PAYMENT_POLL_SECONDS, 30)),
    },
    "low-stock-report": {
        "task": "workers.sweeper_tasks.low_stock_sweep",
        "schedule": float(settings.LOW_STOCK_CHECK_HOURS * 3600),
    },
}

celery_app.autodiscover_tasks(["workers"])

from workers import payment_tasks  # noqa: F401, E402
from workers import sweeper_tasks  # noqa: F401, E402
from workers import tasks  # noqa: F401, E402
