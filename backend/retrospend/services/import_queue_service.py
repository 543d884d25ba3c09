"""Import job queue: lifecycle, admission control and dispatch.

Dispatch is reactive. Creating a job dispatches its owner's queue; every event
that can free capacity (a parse finishing or failing, a finalize, a cancel, a
delete) fires a global drain that re-dispatches every owner with queued work.
Admission compares the global PROCESSING count against the configured limit.
Within one process the count-and-claim step is serialized; across processes it
is a best-effort check and may over-admit by a slot.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine, Sequence
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from retrospend.config import Settings, settings
from retrospend.database import async_session_factory
from retrospend.exceptions import BadRequestError, ForbiddenError, ImportParseError, NotFoundError
from retrospend.models.import_job import (
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    ImportJob,
    ImportKind,
    ImportStatus,
)
from retrospend.plugins import registry
from retrospend.plugins.base import ParseResult
from retrospend.schemas.import_job import GlobalStatsResponse, ImportJobResponse, QueueStatusResponse
from retrospend.schemas.transaction import FinalizeResult, SelectedTransaction
from retrospend.services import finalize_service, job_repository

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def _now() -> datetime:
    return datetime.now(UTC)


class ImportQueueService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        config: Settings = settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = config
        self._admission_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._on_task_done, description))

    def _on_task_done(self, description: str, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s failed", description, exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every dispatch and drain fired so far has finished."""
        while self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    def _trigger_global_drain(self) -> None:
        self._spawn(self.drain_global_queue(), "Global queue processing")

    # ------------------------------------------------------------------
    # Job creation and dispatch
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: uuid.UUID,
        filename: str,
        file_type: str,
        kind: ImportKind,
        file_content: bytes,
    ) -> ImportJob:
        max_size = self._settings.MAX_IMPORT_FILE_SIZE_BYTES
        if len(file_content) > max_size:
            raise BadRequestError(f"File size exceeds maximum of {max_size / 1024 / 1024:g}MB")
        if not file_content:
            raise BadRequestError("Empty file")

        parser = registry.get("parser", kind.value)
        if parser is None or not parser.detect(file_content, filename, file_type):
            raise BadRequestError(f"Unsupported file format for {kind.value} import")

        max_pending = self._settings.MAX_PENDING_IMPORT_JOBS
        async with self._session_factory() as db:
            pending = await job_repository.count_by_status(db, PENDING_STATUSES, user_id)
            if pending >= max_pending:
                raise BadRequestError(
                    f"Maximum of {max_pending} pending import jobs reached. "
                    "Please wait for current jobs to complete."
                )

            job = ImportJob(
                id=uuid.uuid4(),
                user_id=user_id,
                status=ImportStatus.QUEUED,
                kind=kind,
                filename=filename,
                file_size=len(file_content),
                file_type=file_type,
                payload=file_content,
                warnings=[],
                created_at=_now(),
            )
            await job_repository.create(db, job)
            await db.commit()

        logger.info("Queued %s import job %s for user %s (%s)", kind.value, job.id, user_id, filename)
        self._spawn(self.dispatch_for_owner(user_id), f"Queue processing for user {user_id}")
        return job

    async def _claim_next(self, user_id: uuid.UUID) -> ImportJob | None:
        async with self._admission_lock:
            async with self._session_factory() as db:
                processing = await job_repository.count_by_status(db, [ImportStatus.PROCESSING])
                if processing >= self._settings.MAX_CONCURRENT_IMPORT_JOBS:
                    logger.debug(
                        "Global import limit reached (%d processing); user %s stays queued",
                        processing,
                        user_id,
                    )
                    return None

                while True:
                    job = await job_repository.oldest_queued(db, user_id)
                    if job is None:
                        return None
                    claimed = await job_repository.transition(
                        db, job.id, ImportStatus.QUEUED, ImportStatus.PROCESSING, processing_at=_now()
                    )
                    await db.commit()
                    if claimed:
                        return job

    async def dispatch_for_owner(self, user_id: uuid.UUID) -> None:
        """Process the owner's queued jobs oldest first while capacity allows."""
        while True:
            job = await self._claim_next(user_id)
            if job is None:
                return
            logger.info("Processing import job %s for user %s", job.id, user_id)
            await self._run_job(job.id, job.kind, job.filename, job.file_type)

    async def drain_global_queue(self) -> int:
        """Dispatch every owner that has queued work; returns how many were triggered."""
        async with self._session_factory() as db:
            owners = await job_repository.owners_with_queued_jobs(db)
        for owner in owners:
            self._spawn(self.dispatch_for_owner(owner), f"Queue processing for user {owner}")
        return len(owners)

    async def _run_job(
        self, job_id: uuid.UUID, kind: ImportKind, filename: str, file_type: str
    ) -> None:
        try:
            async with self._session_factory() as db:
                payload = await job_repository.get_payload(db, job_id)
            if payload is None:
                raise ImportParseError("No file data found for import job")

            parser = registry.get("parser", kind.value)
            if parser is None:
                raise ImportParseError(f"No parser registered for {kind.value} imports")

            result = await parser.parse(
                payload,
                filename,
                file_type,
                self._settings,
                on_progress=partial(self._record_progress, job_id),
            )
            await self._mark_ready(job_id, kind, result)
        except Exception as exc:
            logger.exception("Import job %s failed", job_id)
            await self._mark_failed(job_id, str(exc) or "Unknown error")

        # A processing slot was released either way
        self._trigger_global_drain()

    async def _record_progress(self, job_id: uuid.UUID, percent: float, message: str) -> None:
        async with self._session_factory() as db:
            await job_repository.update_progress(db, job_id, percent, message)
            await db.commit()

    async def _mark_ready(self, job_id: uuid.UUID, kind: ImportKind, result: ParseResult) -> None:
        rows = [txn.model_dump(mode="json", by_alias=True) for txn in result.transactions]
        values: dict[str, Any] = {
            "parsed_rows": rows,
            "warnings": list(result.warnings),
            "total_rows": len(rows),
            "payload": None,
            "ready_at": _now(),
        }
        if kind == ImportKind.STATEMENT:
            values.update(progress_percent=1.0, status_message="Complete")

        async with self._session_factory() as db:
            stored = await job_repository.transition(
                db, job_id, ImportStatus.PROCESSING, ImportStatus.READY_FOR_REVIEW, **values
            )
            await db.commit()

        if stored:
            logger.info("Import job %s ready for review (%d transactions)", job_id, len(rows))
        else:
            logger.warning("Import job %s left processing before its results were stored", job_id)

    async def _mark_failed(self, job_id: uuid.UUID, message: str) -> bool:
        async with self._session_factory() as db:
            failed = await job_repository.transition(
                db,
                job_id,
                ImportStatus.PROCESSING,
                ImportStatus.FAILED,
                error_message=message[:MAX_ERROR_LENGTH],
                failed_at=_now(),
                payload=None,
            )
            await db.commit()
        return failed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _get_owned_job(
        self, db: AsyncSession, user_id: uuid.UUID, job_id: uuid.UUID
    ) -> ImportJob:
        job = await job_repository.get(db, job_id)
        if job is None:
            raise NotFoundError("Import job not found")
        if job.user_id != user_id:
            raise ForbiddenError("Not authorized to access this job")
        return job

    async def get_job(self, user_id: uuid.UUID, job_id: uuid.UUID) -> ImportJob:
        async with self._session_factory() as db:
            return await self._get_owned_job(db, user_id, job_id)

    async def list_jobs(
        self, user_id: uuid.UUID, include_completed: bool = True, limit: int = 50
    ) -> list[ImportJob]:
        exclude = None if include_completed else [ImportStatus.COMPLETED, ImportStatus.CANCELLED]
        async with self._session_factory() as db:
            return await job_repository.list_for_user(db, user_id, exclude=exclude, limit=limit)

    async def get_queue_status(self, user_id: uuid.UUID) -> QueueStatusResponse:
        active = [
            ImportStatus.QUEUED,
            ImportStatus.PROCESSING,
            ImportStatus.READY_FOR_REVIEW,
            ImportStatus.REVIEWING,
        ]
        async with self._session_factory() as db:
            jobs = await job_repository.list_for_user(db, user_id, statuses=active, newest_first=False)

        by_status: dict[ImportStatus, list[ImportJobResponse]] = {status: [] for status in active}
        for job in jobs:
            by_status[job.status].append(ImportJobResponse.model_validate(job))

        return QueueStatusResponse(
            processing=by_status[ImportStatus.PROCESSING],
            queued=by_status[ImportStatus.QUEUED],
            ready_for_review=by_status[ImportStatus.READY_FOR_REVIEW],
            reviewing=by_status[ImportStatus.REVIEWING],
            queued_count=len(by_status[ImportStatus.QUEUED]),
        )

    async def get_global_stats(self) -> GlobalStatsResponse:
        async with self._session_factory() as db:
            processing = await job_repository.count_by_status(db, [ImportStatus.PROCESSING])
            queued = await job_repository.count_by_status(db, [ImportStatus.QUEUED])
            ready = await job_repository.count_by_status(db, [ImportStatus.READY_FOR_REVIEW])
            reviewing = await job_repository.count_by_status(db, [ImportStatus.REVIEWING])

        max_concurrent = self._settings.MAX_CONCURRENT_IMPORT_JOBS
        return GlobalStatsResponse(
            max_concurrent=max_concurrent,
            current_processing=processing,
            available_slots=max_concurrent - processing,
            total_queued=queued,
            total_ready_for_review=ready,
            total_reviewing=reviewing,
        )

    # ------------------------------------------------------------------
    # Caller transitions
    # ------------------------------------------------------------------

    async def cancel_job(self, user_id: uuid.UUID, job_id: uuid.UUID) -> ImportJob:
        async with self._session_factory() as db:
            job = await self._get_owned_job(db, user_id, job_id)
            if job.status != ImportStatus.QUEUED:
                raise BadRequestError("Only queued jobs can be cancelled")
            cancelled = await job_repository.transition(
                db, job_id, ImportStatus.QUEUED, ImportStatus.CANCELLED, payload=None
            )
            if not cancelled:
                # Dispatch claimed it between the read and the update
                raise BadRequestError("Only queued jobs can be cancelled")
            await db.commit()
            job = await job_repository.get(db, job_id)

        logger.info("Cancelled import job %s", job_id)
        self._trigger_global_drain()
        return job

    async def delete_job(self, user_id: uuid.UUID, job_id: uuid.UUID) -> None:
        async with self._session_factory() as db:
            job = await self._get_owned_job(db, user_id, job_id)
            if job.status not in TERMINAL_STATUSES:
                raise BadRequestError("Only completed, failed, or cancelled jobs can be deleted")
            deleted = await job_repository.delete_job(db, job_id, TERMINAL_STATUSES)
            if not deleted:
                raise BadRequestError("Only completed, failed, or cancelled jobs can be deleted")
            await db.commit()

        logger.info("Deleted import job %s", job_id)
        self._trigger_global_drain()

    async def start_review(self, user_id: uuid.UUID, job_id: uuid.UUID) -> ImportJob:
        async with self._session_factory() as db:
            job = await self._get_owned_job(db, user_id, job_id)
            if job.status != ImportStatus.READY_FOR_REVIEW:
                raise BadRequestError("Job is not ready for review")
            started = await job_repository.transition(
                db,
                job_id,
                ImportStatus.READY_FOR_REVIEW,
                ImportStatus.REVIEWING,
                reviewing_at=_now(),
            )
            if not started:
                raise BadRequestError("Job is not ready for review")
            await db.commit()
            return await job_repository.get(db, job_id)

    async def finalize(
        self,
        user_id: uuid.UUID,
        job_id: uuid.UUID,
        selected_rows: Sequence[SelectedTransaction],
    ) -> FinalizeResult:
        async with self._session_factory() as db:
            job = await self._get_owned_job(db, user_id, job_id)
            if job.status != ImportStatus.REVIEWING:
                raise BadRequestError("Job must be in reviewing state to finalize")

            result = await finalize_service.import_selected_rows(
                db, user_id, job_id, selected_rows, self._settings.BASE_CURRENCY
            )
            completed = await job_repository.transition(
                db,
                job_id,
                ImportStatus.REVIEWING,
                ImportStatus.COMPLETED,
                completed_at=_now(),
                imported_count=result.imported_count,
                skipped_duplicates=result.skipped_duplicates,
            )
            if not completed:
                await db.rollback()
                raise BadRequestError("Job must be in reviewing state to finalize")
            await db.commit()

        logger.info(
            "Finalized import job %s: %d imported, %d duplicates skipped",
            job_id,
            result.imported_count,
            result.skipped_duplicates,
        )
        self._trigger_global_drain()
        return result

    # ------------------------------------------------------------------
    # Operator recovery
    # ------------------------------------------------------------------

    async def force_fail(self, job_id: uuid.UUID, reason: str) -> bool:
        """Fail a job stuck in PROCESSING, e.g. after the worker process died."""
        failed = await self._mark_failed(job_id, reason)
        if failed:
            logger.warning("Force-failed import job %s: %s", job_id, reason)
            self._trigger_global_drain()
        return failed

    async def fail_expired_leases(self, lease: timedelta) -> list[uuid.UUID]:
        """Fail every job that has been PROCESSING for longer than ``lease``."""
        cutoff = _now() - lease
        async with self._session_factory() as db:
            stale = await job_repository.list_stale_processing(db, cutoff)

        minutes = int(lease.total_seconds() // 60)
        expired = []
        for job in stale:
            if await self._mark_failed(
                job.id, f"Processing lease expired after {minutes} minutes; the job was abandoned"
            ):
                expired.append(job.id)

        if expired:
            logger.warning("Failed %d abandoned import jobs", len(expired))
            self._trigger_global_drain()
        return expired
