from datetime import timedelta

from celery import Celery

from oracly.config import settings

celery_app = Celery(
    "oracly",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["oracly.tasks.integration_sync"],
)

# Celery configuration
celery_app.conf.update(
    # Task routing
    task_routes={
        "oracly.tasks.integration_sync.*": {"queue": "integration_sync"},
    },
    # Worker configuration
    worker_max_tasks_per_child=1000,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    # Task execution
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Results
    result_expires=3600,  # 1 hour
    # Timezone
    timezone="UTC",
    enable_utc=True,
)


def build_beat_schedule(interval_minutes: int) -> dict:
    """Fan-out every `interval_minutes`, counted from beat start."""
    return {
        "sync-all-integrations": {
            "task": "oracly.tasks.integration_sync.sync_all_integrations",
            "schedule": timedelta(minutes=interval_minutes),
            "args": (),
        },
    }


# Periodic sync is opt-in; manual syncs work without a beat process
if settings.SCHEDULED_SYNC_ENABLED:
    celery_app.conf.beat_schedule = build_beat_schedule(settings.SYNC_INTERVAL_MINUTES)
