#!/usr/bin/env python3
"""
Strelitzia transcoder CLI - run workers and manage transcoding jobs.
"""

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List

from databases import Database
from rich.console import Console
from rich.table import Table

from config import DATABASE_URL, HEALTH_PORT, LOG_RETENTION_DAYS, STALE_PENDING_SECONDS
from core.enums import JobStatus
from core.errors import (
    InvalidTransitionError,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    QueueLossError,
)
from core.job_service import JobService
from core.job_store import DatabaseJobStore, TranscodingJob, ensure_utc

console = Console()

# Exceptions reported as a one-line error instead of a traceback
EXPECTED_ERRORS = (
    InvalidTransitionError,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    QueueLossError,
)

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.RUNNING: "cyan",
    JobStatus.SUCCESS: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def iso_datetime(value: str) -> datetime:
    """Argparse type for ISO 8601 timestamps. Naive values are taken as UTC."""
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 date/time: {value}")


@asynccontextmanager
async def open_service(with_queue: bool = False) -> AsyncIterator[JobService]:
    """Connect to the database (and the work queue when needed) for one command."""
    from worker.transcoder import build_queue

    db = Database(DATABASE_URL)
    await db.connect()
    queue = None
    try:
        if with_queue:
            queue = await build_queue()
        yield JobService(DatabaseJobStore(db), queue)
    finally:
        if queue is not None:
            await queue.close()
        await db.disconnect()


def run_command(coro) -> None:
    """Run a command coroutine, turning expected errors into exit code 1."""
    try:
        asyncio.run(coro)
    except QueueLossError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("The job is pending but not queued. Cancel it and retry, or re-push it manually.")
        sys.exit(1)
    except EXPECTED_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _status_text(status: JobStatus) -> str:
    return f"[{STATUS_STYLES[status]}]{status.value}[/]"


def render_jobs(jobs: List[TranscodingJob], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Job ID", no_wrap=True)
    table.add_column("Episode", no_wrap=True)
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Started")
    table.add_column("Finished")
    for job in jobs:
        table.add_row(
            job.id,
            job.episode_id,
            _status_text(job.status),
            _fmt_time(job.created_at),
            _fmt_time(job.started_at),
            _fmt_time(job.finished_at),
        )
    return table


def print_job(job: TranscodingJob) -> None:
    console.print(f"[bold]Job {job.id}[/bold]")
    console.print(f"  Episode:    {job.episode_id}")
    console.print(f"  Upload:     {job.upload_id}")
    console.print(f"  Status:     {_status_text(job.status)}")
    console.print(f"  Created by: {job.created_by_id or '-'}")
    console.print(f"  Created:    {_fmt_time(job.created_at)}")
    console.print(f"  Started:    {_fmt_time(job.started_at)}")
    console.print(f"  Finished:   {_fmt_time(job.finished_at)}")
    if job.duration_seconds is not None:
        console.print(f"  Duration:   {job.duration_seconds:.1f}s")
    console.print("  Preset info:")
    console.print(json.dumps(job.preset_info, indent=2, sort_keys=True), markup=False, highlight=False)


# =============================================================================
# Commands
# =============================================================================


def cmd_worker(args):
    """Run a transcoding worker until SIGTERM/SIGINT."""
    from worker.transcoder import worker_main

    asyncio.run(worker_main(health_port=args.health_port))


def cmd_init_db(args):
    """Create tables directly from the SQLAlchemy metadata."""
    from core.database import create_tables

    create_tables()
    console.print("Database tables created successfully!")


def cmd_enqueue(args):
    async def run():
        preset = {
            "keep_original": args.keep_original,
            "prefer_downscale_to_1080": not args.allow_above_1080,
        }
        async with open_service(with_queue=True) as service:
            job = await service.enqueue(
                args.episode_id, args.upload_id, created_by_id=args.created_by, preset=preset
            )
        console.print(f"Enqueued job [bold]{job.id}[/bold] for episode {job.episode_id}")

    run_command(run())


def cmd_cancel(args):
    async def run():
        async with open_service() as service:
            job = await service.cancel(args.job_id)
        console.print(f"Job {job.id} cancelled.")

    run_command(run())


def cmd_retry(args):
    async def run():
        async with open_service(with_queue=True) as service:
            job = await service.retry(args.job_id, upload_id=args.upload_id, created_by_id=args.created_by)
        console.print(f"Job {args.job_id} retried as [bold]{job.id}[/bold]")

    run_command(run())


def cmd_list(args):
    async def run():
        async with open_service() as service:
            jobs = await service.list_jobs(
                status=JobStatus(args.status) if args.status else None,
                episode_id=args.episode,
                created_by_id=args.created_by,
                created_after=args.since,
                created_before=args.until,
                limit=args.limit,
                offset=args.offset,
            )
        if not jobs:
            console.print("No jobs found.")
            return
        console.print(render_jobs(jobs, title=f"Transcoding jobs ({len(jobs)})"))

    run_command(run())


def cmd_show(args):
    async def run():
        async with open_service() as service:
            job = await service.get_job(args.job_id)
        print_job(job)

    run_command(run())


def cmd_logs(args):
    async def run():
        async with open_service() as service:
            text = await service.get_logs(args.job_id)
        # Logs contain ffmpeg output with brackets; print verbatim
        console.print(text, markup=False, highlight=False)

    run_command(run())


def cmd_stats(args):
    async def run():
        async with open_service() as service:
            stats = await service.statistics()
        if args.json:
            print(json.dumps(stats.to_dict(), indent=2))
            return

        table = Table(title="Transcoding statistics")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        table.add_row("Total jobs", str(stats.total_jobs))
        for status in JobStatus:
            table.add_row(f"  {status.value}", str(stats.status_counts.get(status.value, 0)))
        table.add_row("Average duration", f"{stats.average_duration_seconds:.1f}s")
        table.add_row("Success rate", f"{stats.success_rate:.1f}%")
        console.print(table)

    run_command(run())


def cmd_cleanup_logs(args):
    async def run():
        async with open_service() as service:
            count = await service.cleanup_old_logs(days=args.days)
        console.print(f"Cleared logs of {count} job(s) older than {args.days} days.")

    run_command(run())


def cmd_stale(args):
    async def run():
        async with open_service() as service:
            jobs = await service.find_stale_pending(older_than_seconds=args.older_than)
        if not jobs:
            console.print("No stale pending jobs.")
            return
        console.print(render_jobs(jobs, title=f"Pending for more than {args.older_than}s"))
        console.print(
            "These jobs may have lost their queue entry. "
            "Cancel and retry them with 'strelitzia-transcoder cancel' and 'retry'."
        )

    run_command(run())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strelitzia-transcoder", description="Strelitzia transcoder - HLS transcoding jobs"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run a transcoding worker")
    worker_parser.add_argument(
        "--health-port", type=int, default=HEALTH_PORT, help=f"Health server port, 0 disables (default: {HEALTH_PORT})"
    )
    worker_parser.set_defaults(func=cmd_worker)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    enqueue_parser = subparsers.add_parser("enqueue", help="Create and queue a transcoding job")
    enqueue_parser.add_argument("episode_id", help="Episode ID")
    enqueue_parser.add_argument("upload_id", help="Completed upload ID to transcode")
    enqueue_parser.add_argument("--created-by", help="User ID recorded on the job")
    enqueue_parser.add_argument("--keep-original", action="store_true", help="Keep the source file and add a pass-through rendition")
    enqueue_parser.add_argument(
        "--allow-above-1080", action="store_true", help="Also produce 1440p/2160p renditions when the source allows"
    )
    enqueue_parser.set_defaults(func=cmd_enqueue)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or running job")
    cancel_parser.add_argument("job_id", help="Job ID")
    cancel_parser.set_defaults(func=cmd_cancel)

    retry_parser = subparsers.add_parser("retry", help="Retry a failed or cancelled job as a new job")
    retry_parser.add_argument("job_id", help="Job ID")
    retry_parser.add_argument("--upload-id", help="Use a different upload")
    retry_parser.add_argument("--created-by", help="User ID recorded on the new job")
    retry_parser.set_defaults(func=cmd_retry)

    list_parser = subparsers.add_parser("list", help="List jobs, newest first")
    list_parser.add_argument("-s", "--status", choices=[s.value for s in JobStatus], help="Filter by status")
    list_parser.add_argument("-e", "--episode", help="Filter by episode ID")
    list_parser.add_argument("--created-by", help="Filter by creator")
    list_parser.add_argument("--since", type=iso_datetime, help="Created at or after (ISO 8601)")
    list_parser.add_argument("--until", type=iso_datetime, help="Created before (ISO 8601)")
    list_parser.add_argument("-n", "--limit", type=positive_int, default=50, help="Maximum results (default: 50)")
    list_parser.add_argument("--offset", type=int, default=0, help="Skip this many results")
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show job details")
    show_parser.add_argument("job_id", help="Job ID")
    show_parser.set_defaults(func=cmd_show)

    logs_parser = subparsers.add_parser("logs", help="Print a job's execution log")
    logs_parser.add_argument("job_id", help="Job ID")
    logs_parser.set_defaults(func=cmd_logs)

    stats_parser = subparsers.add_parser("stats", help="Show job statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output JSON")
    stats_parser.set_defaults(func=cmd_stats)

    cleanup_parser = subparsers.add_parser("cleanup-logs", help="Clear logs of old jobs")
    cleanup_parser.add_argument(
        "--days", type=positive_int, default=LOG_RETENTION_DAYS, help=f"Age in days (default: {LOG_RETENTION_DAYS})"
    )
    cleanup_parser.set_defaults(func=cmd_cleanup_logs)

    stale_parser = subparsers.add_parser("stale", help="List pending jobs that may have lost their queue entry")
    stale_parser.add_argument(
        "--older-than",
        type=positive_int,
        default=STALE_PENDING_SECONDS,
        help=f"Seconds pending (default: {STALE_PENDING_SECONDS})",
    )
    stale_parser.set_defaults(func=cmd_stale)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
