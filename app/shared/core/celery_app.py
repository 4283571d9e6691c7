from celery import Celery
from app.shared.core.config import get_settings
from app.shared.core.logging import setup_logging

setup_logging()

settings = get_settings()

# Use Redis URL from settings, default to localhost if not set (development)
broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

# Celery only triggers drains; the durable queues themselves live in the database.
celery_app = Celery(
    "costwatch_worker",
    broker=broker_url,
    backend=backend_url,
    include=["app.tasks.queue_tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Worker settings
    worker_prefetch_multiplier=1,  # Fair dispatch: one drain per worker at a time
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Connection settings: never block indefinitely during startup
    broker_connection_timeout=5,
    broker_connection_retry=True,
    broker_connection_max_retries=3,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "drain-scan-queue": {
            "task": "costwatch.drain_queue",
            "schedule": float(settings.QUEUE_DRAIN_INTERVAL_SECONDS),
            "args": ("scan",),
        },
        "drain-alerts-queue": {
            "task": "costwatch.drain_queue",
            "schedule": float(settings.QUEUE_DRAIN_INTERVAL_SECONDS),
            "args": ("alerts",),
        },
        "recover-stalled-jobs": {
            "task": "costwatch.recover_stalled_jobs",
            "schedule": float(settings.STALLED_JOB_SWEEP_INTERVAL_SECONDS),
        },
    },
)


# Eager execution for unit tests without Redis
if settings.TESTING:
    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
        broker_url="memory://",
        result_backend="rpc://",
        broker_connection_retry_on_startup=False,  # Never block in tests
    )

if __name__ == "__main__":
    celery_app.start()
