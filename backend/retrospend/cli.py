"""CLI for import queue inspection and manual recovery.

Usage:
    python -m retrospend.cli list-jobs [--status processing]
    python -m retrospend.cli import-errors [--job-id <uuid>]
    python -m retrospend.cli queue-stats
    python -m retrospend.cli drain
    python -m retrospend.cli force-fail --job-id <uuid> [--reason "..."]
"""

from __future__ import annotations

import argparse
import sys
import uuid
from datetime import UTC, datetime

from sqlalchemy import func, select, update

from retrospend.config import settings
from retrospend.database import sync_session_factory
from retrospend.models import *  # noqa: F401, F403 (registers every model on Base)
from retrospend.models.import_job import ImportJob, ImportStatus


def list_jobs(args: argparse.Namespace) -> None:
    with sync_session_factory() as db:
        stmt = select(ImportJob).order_by(ImportJob.created_at.desc()).limit(args.limit)
        if args.status:
            stmt = stmt.where(ImportJob.status == ImportStatus(args.status))
        jobs = db.execute(stmt).scalars().all()

        if not jobs:
            print("No import jobs found.")
            return

        print(f"{'ID':<38} {'User':<38} {'Kind':<12} {'Status':<18} {'Filename'}")
        print("-" * 130)
        for j in jobs:
            print(
                f"{str(j.id):<38} {str(j.user_id):<38} {j.kind.value:<12} "
                f"{j.status.value:<18} {j.filename}"
            )
        print(f"\nTotal: {len(jobs)} job(s)")


def import_errors(args: argparse.Namespace) -> None:
    with sync_session_factory() as db:
        if args.job_id:
            job = db.execute(
                select(ImportJob).where(ImportJob.id == uuid.UUID(args.job_id))
            ).scalar_one_or_none()
            if job is None:
                print(f"Error: import job '{args.job_id}' not found")
                sys.exit(1)
            print(f"Job:      {job.id}")
            print(f"File:     {job.filename}")
            print(f"Status:   {job.status.value}")
            print(f"Error:    {job.error_message or '(none)'}")
            for warning in job.warnings or []:
                print(f"Warning:  {warning}")
            return

        jobs = (
            db.execute(
                select(ImportJob)
                .where(ImportJob.status == ImportStatus.FAILED)
                .order_by(ImportJob.created_at.desc())
                .limit(20)
            )
            .scalars()
            .all()
        )
        if not jobs:
            print("No failed import jobs found.")
            return

        print(f"{'ID':<38} {'Filename':<30} {'Error'}")
        print("-" * 120)
        for j in jobs:
            err = (j.error_message or "")[:100]
            print(f"{str(j.id):<38} {j.filename:<30} {err}")
        print(f"\nTotal: {len(jobs)} failed job(s)")


def queue_stats(_args: argparse.Namespace) -> None:
    with sync_session_factory() as db:
        rows = db.execute(
            select(ImportJob.status, func.count()).group_by(ImportJob.status)
        ).all()
    counts = {status: count for status, count in rows}
    processing = counts.get(ImportStatus.PROCESSING, 0)
    print(f"Max concurrent:   {settings.MAX_CONCURRENT_IMPORT_JOBS}")
    print(f"Processing:       {processing}")
    print(f"Available slots:  {settings.MAX_CONCURRENT_IMPORT_JOBS - processing}")
    for status in ImportStatus:
        if status != ImportStatus.PROCESSING:
            print(f"{status.value + ':':<18}{counts.get(status, 0)}")


def drain(_args: argparse.Namespace) -> None:
    from retrospend.tasks.import_tasks import drain_import_queue

    result = drain_import_queue.apply_async()
    print(f"Dispatched drain task {result.id}")


def force_fail(args: argparse.Namespace) -> None:
    """Fail a job left in PROCESSING by a crashed worker and refill the queue."""
    from retrospend.tasks.import_tasks import drain_import_queue

    job_id = uuid.UUID(args.job_id)
    with sync_session_factory() as db:
        job = db.execute(select(ImportJob).where(ImportJob.id == job_id)).scalar_one_or_none()
        if job is None:
            print(f"Error: import job '{args.job_id}' not found")
            sys.exit(1)
        if job.status != ImportStatus.PROCESSING:
            print(f"Error: job status is '{job.status.value}', must be 'processing'")
            sys.exit(1)

        result = db.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.status == ImportStatus.PROCESSING)
            .values(
                status=ImportStatus.FAILED,
                error_message=f"{args.reason} [Force-failed via CLI]"[:1000],
                failed_at=datetime.now(UTC),
                payload=None,
            )
        )
        db.commit()
        if result.rowcount != 1:
            print(f"Error: job '{args.job_id}' changed state, nothing updated")
            sys.exit(1)

    task = drain_import_queue.apply_async()
    print(f"Force-failed job {job_id}; dispatched drain task {task.id}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="retrospend.cli", description="Retrospend import queue tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # list-jobs
    p_list = subparsers.add_parser("list-jobs", help="List recent import jobs")
    p_list.add_argument("--status", choices=[s.value for s in ImportStatus], default=None)
    p_list.add_argument("--limit", type=int, default=50)
    p_list.set_defaults(func=list_jobs)

    # import-errors
    p_errors = subparsers.add_parser("import-errors", help="Show failed import jobs")
    p_errors.add_argument("--job-id", required=False, default=None, help="Specific job UUID")
    p_errors.set_defaults(func=import_errors)

    # queue-stats
    p_stats = subparsers.add_parser("queue-stats", help="Show global queue statistics")
    p_stats.set_defaults(func=queue_stats)

    # drain
    p_drain = subparsers.add_parser("drain", help="Dispatch queued jobs for every user")
    p_drain.set_defaults(func=drain)

    # force-fail
    p_force = subparsers.add_parser("force-fail", help="Fail a job stuck in PROCESSING")
    p_force.add_argument("--job-id", required=True, help="ImportJob UUID")
    p_force.add_argument("--reason", default="Processing was interrupted")
    p_force.set_defaults(func=force_fail)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
