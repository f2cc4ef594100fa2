from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from busbooking.config import settings
from busbooking.logging_setup import setup_logging


celery_app = Celery(
    "busbooking_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["busbooking.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    beat_schedule={
        "expire-abandoned-bookings": {
            "task": "busbooking.tasks.expire_abandoned_bookings",
            "schedule": float(settings.EXPIRY_SWEEP_INTERVAL_SECONDS),
        },
    },
)

# workers and beat log JSON with trace ids, same as the API
celery_setup_logging.connect(setup_logging, weak=False)
