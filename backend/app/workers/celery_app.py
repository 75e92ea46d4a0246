"""Celery application configuration."""

from datetime import timedelta

from celery import Celery

from app.config import settings

# Create Celery app
celery_app = Celery(
    "keystone-mfa",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,   # 5 minutes max
    task_soft_time_limit=270,  # 4.5 minutes soft limit
    # Re-queue tasks if a worker crashes mid-execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_retry_delay=60,
)


class RetryableTask(celery_app.Task):
    """
    Base task class with automatic exponential-backoff retry on failure.

    Maintenance tasks are idempotent deletes, so retrying after a DB timeout
    or network blip is always safe.
    """

    abstract = True
    autoretry_for = (Exception,)
    max_retries = 3
    retry_backoff = True        # Exponential: 60s, 120s, 240s
    retry_backoff_max = 600     # Cap at 10 minutes
    retry_jitter = True


celery_app.Task = RetryableTask


# Import tasks here as they're created
from app.workers.tasks import mfa_tasks  # noqa: F401, E402

# Beat schedule (periodic tasks)
celery_app.conf.beat_schedule = {
    # Store hygiene only; expiry is always enforced when a record is read
    "cleanup-expired-mfa-state": {
        "task": "cleanup_expired_mfa_state",
        "schedule": timedelta(minutes=settings.MFA_CLEANUP_INTERVAL_MINUTES),
    },
}
