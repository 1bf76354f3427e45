"""Celery application configuration.

1. The webhook handler ENQUEUES a run (fast, non-blocking)
2. Redis holds the task messages
3. Workers PICK UP stage tasks and run them (minutes, not milliseconds)

Queues:
- default: orchestration, test, scan and deploy stages
- one queue per build platform (build.amd64, build.arm64...), each consumed
  by a worker running on that architecture:

    celery -A shipyard.workers.celery_app worker -Q default
    celery -A shipyard.workers.celery_app worker -Q build.arm64   # on an arm64 host
"""

from celery import Celery
from celery.signals import setup_logging

from shipyard.logging_config import configure_logging
from shipyard.models.config import get_settings

settings = get_settings()

# broker: where tasks are queued (Redis)
# backend: where task results are stored (Redis), needed by the build chord
celery_app = Celery(
    "shipyard",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    # JSON is human-readable and safe (no arbitrary code execution).
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    task_track_started=True,
    task_acks_late=True,            # Acknowledge task AFTER execution
    worker_prefetch_multiplier=1,   # Stage tasks are long-running

    task_default_queue="default",
    task_routes={
        "shipyard.workers.tasks.*": {"queue": "default"},
    },
)

celery_app.autodiscover_tasks(["shipyard.workers"])


@setup_logging.connect
def _configure_worker_logging(**_: object) -> None:
    """Use our logging setup instead of Celery's default one."""
    configure_logging(settings.log_level)
