"""
Celery Application Configuration

Configures Celery with:
- Maintenance queue for storage housekeeping
- Beat schedule for the abandoned-upload reaper
- Result backend for task tracking
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "media_pipeline",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("maintenance", routing_key="maintenance.#"),
    ),

    # Task routing
    task_routes={
        "src.pipeline.tasks.sweep_abandoned_uploads": {"queue": "maintenance"},
    },

    # Retry settings with exponential backoff
    task_default_retry_delay=5,  # 5 seconds initial delay
    task_max_retries=5,

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "sweep-abandoned-uploads": {
        "task": "src.pipeline.tasks.sweep_abandoned_uploads",
        "schedule": float(max(settings.SESSION_SWEEP_INTERVAL_SECONDS, 60)),
    },
}
