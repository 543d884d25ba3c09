from __future__ import annotations

from celery import Celery
from celery.signals import worker_init

from retrospend.config import settings

celery_app = Celery(
    "retrospend",
    broker=settings.REDIS_URL,
    include=["retrospend.tasks.import_tasks"],
)
celery_app.conf.update(
    result_backend=settings.REDIS_URL,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
)

# Abandoned-job reconciliation is opt-in
if settings.IMPORT_PROCESSING_LEASE_MINUTES > 0:
    celery_app.conf.beat_schedule = {
        "reconcile-stale-import-jobs": {
            "task": "retrospend.tasks.import_tasks.reconcile_stale_import_jobs",
            "schedule": settings.IMPORT_RECONCILE_INTERVAL_SECONDS,
        },
    }

celery_app.autodiscover_tasks(["retrospend.tasks"])


@worker_init.connect
def on_worker_init(**kwargs):  # type: ignore[no-untyped-def]
    """Discover parser plugins when the Celery worker starts."""
    from retrospend.plugins import registry
    registry.discover()
