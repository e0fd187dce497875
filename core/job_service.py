"""
Operator-facing job operations: enqueue, cancel, retry, inspection,
statistics and log retention.

The producer side owns the one-active-job-per-episode rule. The worker never
creates jobs and never retries on its own.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from config import LOG_RETENTION_DAYS, STALE_PENDING_SECONDS
from core import metrics
from core.enums import RETRYABLE_STATUSES, JobStatus, UploadStatus
from core.errors import JobConflictError, JobValidationError, QueueLossError
from core.job_queue import JobRef, WorkQueue
from core.job_store import JobStore, TranscodingJob, new_job_id

logger = logging.getLogger(__name__)


@dataclass
class JobStatistics:
    total_jobs: int
    status_counts: Dict[str, int] = field(default_factory=dict)
    average_duration_seconds: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_jobs": self.total_jobs,
            "status_counts": self.status_counts,
            "average_duration_seconds": self.average_duration_seconds,
            "success_rate": self.success_rate,
        }


class JobService:
    def __init__(self, store: JobStore, queue: Optional[WorkQueue] = None):
        self.store = store
        self.queue = queue

    async def enqueue(
        self,
        episode_id: str,
        upload_id: str,
        created_by_id: Optional[str] = None,
        preset: Optional[Dict[str, Any]] = None,
    ) -> TranscodingJob:
        """
        Create a pending job for an episode and push it onto the work queue.

        Raises:
            JobValidationError: episode or upload missing, or upload not completed
            JobConflictError: the episode already has a pending or running job
            QueueLossError: the job was created but could not be queued
        """
        if self.queue is None:
            raise RuntimeError("JobService was created without a work queue")

        episode = await self.store.get_episode(episode_id)
        if episode is None:
            raise JobValidationError(f"Episode {episode_id} not found")

        upload = await self.store.get_upload(upload_id)
        if upload is None:
            raise JobValidationError(f"Upload {upload_id} not found")
        if upload.status != UploadStatus.COMPLETED:
            raise JobValidationError(
                f"Upload {upload_id} is not completed (status: {upload.status.value})"
            )

        existing = await self.store.find_active_by_episode(episode_id)
        if existing is not None:
            raise JobConflictError(episode_id, existing.id)

        now = datetime.now(timezone.utc)
        preset_info = dict(preset or {})
        preset_info.update(
            {
                "uploadId": upload_id,
                "videoTitle": episode.title,
                "createdAt": now.isoformat(),
            }
        )
        job = await self.store.create(
            TranscodingJob(
                id=new_job_id(),
                episode_id=episode_id,
                upload_id=upload_id,
                status=JobStatus.PENDING,
                created_by_id=created_by_id,
                created_at=now,
                preset_info=preset_info,
            )
        )

        # The row must exist before the reference is visible to workers
        try:
            await self.queue.push(JobRef(job_id=job.id, episode_id=episode_id, upload_id=upload_id))
        except Exception as e:
            metrics.JOBS_ENQUEUED_TOTAL.labels(result="queue_lost").inc()
            logger.error(f"Job {job.id} created but queue push failed: {e}")
            raise QueueLossError(job.id, e) from e

        metrics.JOBS_ENQUEUED_TOTAL.labels(result="queued").inc()
        logger.info(f"Enqueued job {job.id} for episode {episode_id} (upload {upload_id})")
        return job

    async def cancel(self, job_id: str) -> TranscodingJob:
        """Cancel a pending or running job. Raises InvalidTransitionError otherwise."""
        job = await self.store.update_status(
            job_id, JobStatus.CANCELLED, finished_at=datetime.now(timezone.utc)
        )
        logger.info(f"Cancelled job {job_id}")
        return job

    async def retry(
        self,
        job_id: str,
        upload_id: Optional[str] = None,
        created_by_id: Optional[str] = None,
    ) -> TranscodingJob:
        """
        Create a new job for the episode of a failed or cancelled job.

        The original job is left untouched. The upload defaults to the one
        recorded in the original job's preset_info.
        """
        original = await self.store.get(job_id)
        if original.status not in RETRYABLE_STATUSES:
            raise JobValidationError(
                f"Can only retry failed or cancelled jobs, current status: {original.status.value}"
            )

        target_upload_id = upload_id or original.preferences.upload_id or original.upload_id
        if not target_upload_id:
            raise JobValidationError("Upload ID required to retry job")

        preferences = {
            key: original.preset_info[key]
            for key in ("keep_original", "keepOriginal", "prefer_downscale_to_1080", "preferDownscaleTo1080")
            if key in original.preset_info
        }
        preferences["retryOf"] = original.id

        new_job = await self.enqueue(
            original.episode_id,
            target_upload_id,
            created_by_id=created_by_id or original.created_by_id,
            preset=preferences,
        )
        logger.info(f"Retried job {job_id} as {new_job.id}")
        return new_job

    async def get_job(self, job_id: str) -> TranscodingJob:
        return await self.store.get(job_id)

    async def list_jobs(self, **filters) -> List[TranscodingJob]:
        return await self.store.list_jobs(**filters)

    async def get_logs(self, job_id: str) -> str:
        job = await self.store.get(job_id)
        if not job.logs_text:
            return f"No logs available for job {job_id}"
        return job.logs_text

    async def statistics(self) -> JobStatistics:
        counts = await self.store.count_by_status()
        status_counts = {status.value: counts.get(status, 0) for status in JobStatus}

        durations = [
            job.duration_seconds
            for job in await self.store.list_finished()
            if job.status in (JobStatus.SUCCESS, JobStatus.FAILED) and job.duration_seconds is not None
        ]
        average = sum(durations) / len(durations) if durations else 0.0

        succeeded = status_counts[JobStatus.SUCCESS.value]
        failed = status_counts[JobStatus.FAILED.value]
        success_rate = succeeded / (succeeded + failed) * 100 if succeeded + failed else 0.0

        return JobStatistics(
            total_jobs=sum(status_counts.values()),
            status_counts=status_counts,
            average_duration_seconds=average,
            success_rate=success_rate,
        )

    async def cleanup_old_logs(self, days: int = LOG_RETENTION_DAYS) -> int:
        """Clear logs_text of jobs created more than ``days`` ago. Returns the count."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        cleared = await self.store.clear_logs_before(cutoff)
        logger.info(f"Cleared logs of {cleared} jobs created before {cutoff.isoformat()}")
        return cleared

    async def find_stale_pending(self, older_than_seconds: int = STALE_PENDING_SECONDS) -> List[TranscodingJob]:
        """
        List pending jobs older than the threshold.

        These may have lost their queue entry. This is a report only; an
        operator decides whether to cancel and retry them.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        return await self.store.list_jobs(status=JobStatus.PENDING, created_before=cutoff, limit=1000)
