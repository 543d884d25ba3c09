"""Persistence calls for import jobs.

Every status change goes through ``transition``: a single conditional UPDATE
keyed by job id and the status the caller expects the job to be in.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from retrospend.models.import_job import ALLOWED_TRANSITIONS, ImportJob, ImportStatus


async def create(db: AsyncSession, job: ImportJob) -> ImportJob:
    db.add(job)
    await db.flush()
    return job


async def get(db: AsyncSession, job_id: uuid.UUID) -> ImportJob | None:
    result = await db.execute(
        select(ImportJob)
        .where(ImportJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payload(db: AsyncSession, job_id: uuid.UUID) -> bytes | None:
    result = await db.execute(select(ImportJob.payload).where(ImportJob.id == job_id))
    return result.scalar_one_or_none()


async def transition(
    db: AsyncSession,
    job_id: uuid.UUID,
    expected: ImportStatus,
    target: ImportStatus,
    **values: Any,
) -> bool:
    """Move a job from ``expected`` to ``target``; False if it was not in ``expected``."""
    if target not in ALLOWED_TRANSITIONS[expected]:
        raise ValueError(f"Illegal import job transition {expected.value} -> {target.value}")
    result = await db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def update_progress(
    db: AsyncSession, job_id: uuid.UUID, percent: float, message: str
) -> None:
    await db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == ImportStatus.PROCESSING)
        .values(progress_percent=percent, status_message=message[:500])
        .execution_options(synchronize_session=False)
    )


async def delete_job(db: AsyncSession, job_id: uuid.UUID, statuses: Iterable[ImportStatus]) -> bool:
    result = await db.execute(
        delete(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_(list(statuses)))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_by_status(
    db: AsyncSession,
    statuses: Iterable[ImportStatus],
    user_id: uuid.UUID | None = None,
) -> int:
    stmt = select(func.count()).select_from(ImportJob).where(ImportJob.status.in_(list(statuses)))
    if user_id is not None:
        stmt = stmt.where(ImportJob.user_id == user_id)
    return (await db.execute(stmt)).scalar_one()


async def oldest_queued(db: AsyncSession, user_id: uuid.UUID) -> ImportJob | None:
    result = await db.execute(
        select(ImportJob)
        .where(ImportJob.user_id == user_id, ImportJob.status == ImportStatus.QUEUED)
        .order_by(ImportJob.created_at.asc(), ImportJob.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def owners_with_queued_jobs(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(ImportJob.user_id).where(ImportJob.status == ImportStatus.QUEUED).distinct()
    )
    return list(result.scalars().all())


async def list_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    statuses: Iterable[ImportStatus] | None = None,
    exclude: Iterable[ImportStatus] | None = None,
    newest_first: bool = True,
    limit: int | None = None,
) -> list[ImportJob]:
    stmt = select(ImportJob).where(ImportJob.user_id == user_id)
    if statuses is not None:
        stmt = stmt.where(ImportJob.status.in_(list(statuses)))
    if exclude is not None:
        stmt = stmt.where(ImportJob.status.not_in(list(exclude)))
    order = ImportJob.created_at.desc() if newest_first else ImportJob.created_at.asc()
    stmt = stmt.order_by(order)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def list_stale_processing(db: AsyncSession, started_before: Any) -> list[ImportJob]:
    result = await db.execute(
        select(ImportJob).where(
            ImportJob.status == ImportStatus.PROCESSING,
            ImportJob.processing_at < started_before,
        )
    )
    return list(result.scalars().all())
