#!/usr/bin/env python3
"""
Transcoding worker.

Pops job references from the work queue, one job at a time, and runs each
through probe -> plan -> encode -> compose -> finalize. Any failure marks that
job failed with a tagged final log entry; the loop itself keeps running.

Operators may cancel a job while it runs. The worker checks for that before
each rendition and before publishing, and stops without publishing.
"""

import asyncio
import logging
import shutil
import signal
import time
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from databases import Database

from config import (
    DATABASE_URL,
    ERROR_LOG_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    HEALTH_PORT,
    LOG_LEVEL,
    POLL_BACKOFF,
    POLL_TIMEOUT,
    QUEUE_BACKEND,
    QUEUE_NAME,
    UPLOADS_PATH,
    WORK_DIR,
)
from core import metrics
from core.enums import JobStatus, PipelineStage
from core.errors import (
    EncodeError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    TranscodeError,
    truncate_error,
)
from core.job_queue import InMemoryWorkQueue, JobRef, RedisWorkQueue, WorkQueue
from core.job_store import DatabaseJobStore, JobStore, TranscodingJob, Upload
from core.redis_client import RedisClient
from worker.alerts import (
    alert_job_failed,
    alert_worker_shutdown,
    alert_worker_startup,
    send_alert_fire_and_forget,
)
from worker.encoder import Encoder
from worker.finalizer import OutputFinalizer
from worker.health_server import HealthServer
from worker.job_log import JobLog
from worker.planner import Rendition, plan
from worker.playlist import write_master_playlist
from worker.prober import MediaProber

logger = logging.getLogger(__name__)

# Async callable run before probing; raising fails the job at the precheck stage
PrecheckHook = Callable[[TranscodingJob, Path], Awaitable[None]]

# Progress milestones written to the job log per rendition
PROGRESS_LOG_STEP = 25


class WorkerState:
    """
    Mutable state for one worker instance.

    Kept separate from the worker so signal handlers and tests can request a
    shutdown without reaching into the loop.
    """

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or str(uuid.uuid4())
        self.shutdown_event = asyncio.Event()
        self.current_job_id: Optional[str] = None
        self.jobs_processed = 0

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def request_shutdown(self):
        """Request graceful shutdown: finish the current job, then stop polling."""
        self.shutdown_event.set()


class TranscodeWorker:
    def __init__(
        self,
        store: JobStore,
        queue: WorkQueue,
        prober: Optional[MediaProber] = None,
        encoder: Optional[Encoder] = None,
        finalizer: Optional[OutputFinalizer] = None,
        work_root: Path = WORK_DIR,
        uploads_root: Path = UPLOADS_PATH,
        poll_timeout: float = POLL_TIMEOUT,
        poll_backoff: float = POLL_BACKOFF,
        prechecks: Sequence[PrecheckHook] = (),
        state: Optional[WorkerState] = None,
    ):
        self.store = store
        self.queue = queue
        self.prober = prober or MediaProber()
        self.encoder = encoder or Encoder()
        self.finalizer = finalizer or OutputFinalizer(store)
        self.work_root = Path(work_root)
        self.uploads_root = Path(uploads_root)
        self.poll_timeout = poll_timeout
        self.poll_backoff = poll_backoff
        self.prechecks = list(prechecks)
        self.state = state or WorkerState()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll and process jobs until shutdown is requested."""
        logger.info(f"Transcoding worker started (ID: {self.state.worker_id[:8]})")
        while not self.state.shutdown_requested:
            try:
                handled = await self.run_once()
            except Exception as e:
                # Queue or store unavailable; back off and try again
                metrics.QUEUE_POPS_TOTAL.labels(result="error").inc()
                logger.error(f"Worker poll failed: {e}")
                handled = False

            if not handled and not self.state.shutdown_requested:
                await self._backoff()
        logger.info("Shutdown requested, worker loop stopped")

    async def _backoff(self) -> None:
        if self.poll_backoff <= 0:
            return
        try:
            await asyncio.wait_for(self.state.shutdown_event.wait(), timeout=self.poll_backoff)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """
        Pop at most one job reference and process it.

        Returns:
            True if a reference was popped (whether or not it was processed)
        """
        job_ref = await self.queue.pop_blocking(self.poll_timeout)
        if job_ref is None:
            metrics.QUEUE_POPS_TOTAL.labels(result="empty").inc()
            return False
        metrics.QUEUE_POPS_TOTAL.labels(result="job").inc()
        await self.process(job_ref)
        return True

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def process(self, job_ref: JobRef) -> Optional[JobStatus]:
        """
        Run one job end to end.

        Returns:
            The job's final status, or None if the reference was skipped
        """
        try:
            job = await self.store.get(job_ref.job_id)
        except JobNotFoundError:
            logger.warning(f"Skipping unknown job {job_ref.job_id}")
            return None

        if job.status != JobStatus.PENDING:
            # Terminal, or already claimed through a duplicate queue entry
            logger.info(f"Skipping job {job.id} with status {job.status.value}")
            return None

        try:
            job = await self.store.update_status(
                job.id, JobStatus.RUNNING, started_at=datetime.now(timezone.utc)
            )
        except InvalidTransitionError as e:
            logger.info(f"Skipping job {job.id}: {e}")
            return None

        self.state.current_job_id = job.id
        job_log = JobLog(self.store, job.id)
        work_dir = self.work_root / job.id
        tracker = _StageTracker()
        started = time.monotonic()
        metrics.JOBS_ACTIVE.inc()

        try:
            await self._run_pipeline(job, job_log, work_dir, tracker)
            status = JobStatus.SUCCESS
        except JobCancelledError:
            await job_log.warning(f"Job cancelled during {tracker.stage.value}; the episode was not updated")
            self._remove_work_dir(work_dir)
            status = JobStatus.CANCELLED
        except Exception as e:
            stage = (e.stage if isinstance(e, TranscodeError) else None) or tracker.stage
            await self._fail(job, job_log, work_dir, stage, e)
            status = JobStatus.FAILED
        finally:
            metrics.JOBS_ACTIVE.dec()
            self.state.current_job_id = None
            self.state.jobs_processed += 1

        elapsed = time.monotonic() - started
        metrics.JOBS_FINISHED_TOTAL.labels(status=status.value).inc()
        metrics.JOB_DURATION_SECONDS.labels(status=status.value).observe(elapsed)
        logger.info(f"Job {job.id} finished with status {status.value} in {elapsed:.1f}s")
        return status

    def resolve_source_path(self, upload: Upload) -> Path:
        path = Path(upload.stored_path)
        return path if path.is_absolute() else self.uploads_root / path

    async def _check_cancelled(self, job_id: str) -> None:
        current = await self.store.get(job_id)
        if current.status == JobStatus.CANCELLED:
            raise JobCancelledError("Job was cancelled by an operator")

    async def _run_pipeline(
        self,
        job: TranscodingJob,
        job_log: JobLog,
        work_dir: Path,
        tracker: "_StageTracker",
    ) -> None:
        preferences = job.preferences

        tracker.stage = PipelineStage.PRECHECK
        upload = await self.store.get_upload(job.upload_id)
        if upload is None:
            raise TranscodeError(f"Upload {job.upload_id} not found")
        source_path = self.resolve_source_path(upload)
        await job_log.info(
            f"Starting job for episode {job.episode_id} on worker {self.state.worker_id[:8]}; source {source_path}"
        )
        for hook in self.prechecks:
            await hook(job, source_path)

        tracker.stage = PipelineStage.PROBE
        info = await self.prober.probe(source_path)
        await job_log.info(
            f"Probed source: {info.width}x{info.height}, {info.duration_seconds:.1f}s, "
            f"codec {info.codec}, bitrate {info.bitrate or 'unknown'}"
        )

        tracker.stage = PipelineStage.PLAN
        renditions = plan(
            info.height,
            preferences,
            source_width=info.width,
            source_bitrate=info.bitrate,
        )
        await job_log.info(f"Planned renditions: {', '.join(r.name for r in renditions)}")

        tracker.stage = PipelineStage.ENCODE
        if work_dir.exists():
            # Leftovers from an attempt that died mid-encode
            shutil.rmtree(work_dir)
        work_dir.mkdir(parents=True)

        async def before_each(rendition: Rendition, index: int, total: int):
            await self._check_cancelled(job.id)
            await job_log.info(f"Encoding rendition {rendition.name} ({index}/{total})")

        milestones = {}

        async def on_progress(rendition: Rendition, percent: int):
            milestone = percent - percent % PROGRESS_LOG_STEP
            if milestone > milestones.get(rendition.name, 0):
                milestones[rendition.name] = milestone
                await job_log.info(f"{rendition.name}: {milestone}%")

        encoded = await self.encoder.encode_all(
            source_path,
            renditions,
            work_dir,
            info.duration_seconds,
            before_each=before_each,
            progress_callback=on_progress,
        )
        for item in encoded:
            await job_log.info(f"Encoded {item.rendition.name} in {item.elapsed_seconds:.1f}s")

        tracker.stage = PipelineStage.COMPOSE
        master_path = write_master_playlist(work_dir, renditions)
        await job_log.info(f"Wrote master playlist with {len(renditions)} variants to {master_path}")

        tracker.stage = PipelineStage.FINALIZE
        await self._check_cancelled(job.id)
        result = await self.finalizer.finalize(
            job, work_dir, renditions, source_path, preferences=preferences, job_log=job_log
        )
        await job_log.info(f"Job completed; master playlist at {result.master_playlist_path}")

    async def _fail(
        self,
        job: TranscodingJob,
        job_log: JobLog,
        work_dir: Path,
        stage: PipelineStage,
        error: Exception,
    ) -> None:
        message = str(error) or error.__class__.__name__
        logger.error(f"Job {job.id} failed at {stage.value}: {truncate_error(message, ERROR_SUMMARY_MAX_LENGTH)}")

        details = ""
        if isinstance(error, EncodeError):
            details = f"Rendition: {error.rendition}\nExit code: {error.exit_code}\n"
            if error.stderr_tail:
                details += f"ffmpeg stderr (tail):\n{error.stderr_tail}\n"

        tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if len(tb) > ERROR_LOG_MAX_LENGTH:
            # Keep the innermost frames
            tb = "...\n" + tb[-ERROR_LOG_MAX_LENGTH:]
        await job_log.raw(f"\nFINAL ERROR [{stage.value}]: {message}\n{details}{tb}\n")

        try:
            await self.store.update_status(job.id, JobStatus.FAILED, finished_at=datetime.now(timezone.utc))
        except InvalidTransitionError as e:
            # Operator cancelled while the failure was being handled
            logger.warning(f"Could not mark job {job.id} failed: {e}")
        except Exception as e:
            logger.error(f"Could not mark job {job.id} failed, it stays running: {e}")

        self._remove_work_dir(work_dir)
        send_alert_fire_and_forget(alert_job_failed(job.id, job.episode_id, stage.value, message))

    def _remove_work_dir(self, work_dir: Path) -> None:
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove work directory {work_dir}: {e}")


class _StageTracker:
    def __init__(self):
        self.stage = PipelineStage.PRECHECK


# ----------------------------------------------------------------------
# Process entry point
# ----------------------------------------------------------------------


def install_signal_handlers(state: WorkerState) -> None:
    """Request a graceful shutdown on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def handle(sig: signal.Signals):
        logger.info(f"{sig.name} received, finishing current job and shutting down gracefully...")
        state.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except NotImplementedError:
            # Platforms without loop signal support
            signal.signal(sig, lambda signum, frame: state.request_shutdown())


async def build_queue(backend: str = QUEUE_BACKEND) -> WorkQueue:
    if backend == "memory":
        return InMemoryWorkQueue()
    if backend != "redis":
        raise ValueError(f"Unknown queue backend: {backend}")
    redis = RedisClient()
    await redis.connect()
    return RedisWorkQueue(redis, QUEUE_NAME)


async def worker_main(health_port: int = HEALTH_PORT) -> None:
    """Run a worker process: connect, serve health checks, and poll until signalled."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    metrics.init_app_info()

    db = Database(DATABASE_URL)
    await db.connect()
    queue = await build_queue()
    state = WorkerState()
    install_signal_handlers(state)

    health = None
    if health_port:
        health = HealthServer(port=health_port, queue_check_fn=queue.health_check)
        await health.start()

    worker = TranscodeWorker(DatabaseJobStore(db), queue, state=state)
    send_alert_fire_and_forget(alert_worker_startup(state.worker_id, QUEUE_BACKEND))
    try:
        await worker.run()
    finally:
        await alert_worker_shutdown(state.worker_id, jobs_processed=state.jobs_processed)
        if health is not None:
            await health.stop()
        await queue.close()
        await db.disconnect()
        logger.info("Worker stopped gracefully.")


if __name__ == "__main__":
    asyncio.run(worker_main())
