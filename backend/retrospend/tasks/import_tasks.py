from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from retrospend.config import settings
from retrospend.plugins import registry
from retrospend.services.import_queue_service import ImportQueueService
from retrospend.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _ensure_plugins() -> None:
    """Discover plugins if not already loaded."""
    if not registry.get_all("parser"):
        registry.discover()


def _run_with_service(action: Callable[[ImportQueueService], Awaitable[T]]) -> T:
    """Run ``action`` on a fresh event loop with its own engine.

    The engine is created per run because asyncpg connections cannot be
    shared between event loops.
    """

    async def _main() -> T:
        engine = create_async_engine(settings.DATABASE_URL, echo=False)
        try:
            service = ImportQueueService(async_sessionmaker(engine, expire_on_commit=False))
            result = await action(service)
            await service.wait_idle()
            return result
        finally:
            await engine.dispose()

    return asyncio.run(_main())


@celery_app.task(name="retrospend.tasks.import_tasks.drain_import_queue")
def drain_import_queue() -> dict:
    """Dispatch queued import jobs for every owner and wait for them to finish."""
    _ensure_plugins()
    owners = _run_with_service(lambda service: service.drain_global_queue())
    logger.info("Drained import queue for %d owners", owners)
    return {"owners": owners}


@celery_app.task(name="retrospend.tasks.import_tasks.reconcile_stale_import_jobs")
def reconcile_stale_import_jobs() -> dict:
    """Fail jobs whose processing lease expired, then refill the freed slots."""
    lease_minutes = settings.IMPORT_PROCESSING_LEASE_MINUTES
    if lease_minutes <= 0:
        return {"skipped": True, "reason": "IMPORT_PROCESSING_LEASE_MINUTES not configured"}

    _ensure_plugins()
    expired = _run_with_service(
        lambda service: service.fail_expired_leases(timedelta(minutes=lease_minutes))
    )
    return {"expired": [str(job_id) for job_id in expired], "count": len(expired)}
