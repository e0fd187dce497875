"""
Job store: persistence for transcoding jobs and the upload/episode records
the pipeline reads and updates.

Two implementations share the ``JobStore`` interface:
- ``DatabaseJobStore``: SQLAlchemy Core tables through the async ``databases``
  library (PostgreSQL or SQLite), with transient-error retry.
- ``InMemoryJobStore``: dict-backed, for tests and single-process setups.

Both enforce the job state machine in ``update_status``.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from databases import Database
from pydantic import BaseModel, ConfigDict, Field

from core.database import episodes, transcoding_jobs, uploads
from core.db_retry import execute_with_retry
from core.enums import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus, UploadStatus, can_transition
from core.errors import InvalidTransitionError, JobNotFoundError

logger = logging.getLogger(__name__)

# Columns that update_status may set alongside the status
UPDATABLE_FIELDS = ("started_at", "finished_at", "logs_text", "preset_info")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes retrieved from the database
    may be timezone-naive even though they were stored as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Assume naive datetimes from SQLite are UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_job_id() -> str:
    return str(uuid.uuid4())


class PresetInfo(BaseModel):
    """
    Known keys of a job's preset_info bag.

    Producers have written both snake_case and camelCase keys, so both are
    accepted. Anything else is kept as an extra field.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    keep_original: bool = Field(default=False, alias="keepOriginal")
    prefer_downscale_to_1080: bool = Field(default=True, alias="preferDownscaleTo1080")
    upload_id: Optional[str] = Field(default=None, alias="uploadId")
    video_title: Optional[str] = Field(default=None, alias="videoTitle")


@dataclass
class TranscodingJob:
    """One transcoding attempt for an episode."""

    id: str
    episode_id: str
    upload_id: str
    status: JobStatus = JobStatus.PENDING
    created_by_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    preset_info: Dict[str, Any] = field(default_factory=dict)
    logs_text: str = ""

    @property
    def preferences(self) -> PresetInfo:
        return PresetInfo.model_validate(self.preset_info)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall-clock run time, if the job both started and finished."""
        if self.started_at is None or self.finished_at is None:
            return None
        return (ensure_utc(self.finished_at) - ensure_utc(self.started_at)).total_seconds()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "episode_id": self.episode_id,
            "upload_id": self.upload_id,
            "status": self.status.value,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "preset_info": self.preset_info,
        }


@dataclass
class Upload:
    id: str
    stored_path: str
    status: UploadStatus = UploadStatus.COMPLETED
    original_filename: Optional[str] = None


@dataclass
class Episode:
    id: str
    title: Optional[str] = None
    filesystem_path: Optional[str] = None


def check_transition(job: TranscodingJob, target: JobStatus) -> None:
    """Raise InvalidTransitionError unless ``job`` may move to ``target``."""
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.id, job.status.value, JobStatus(target).value)


class JobStore:
    """Interface for job, upload and episode persistence."""

    async def create(self, job: TranscodingJob) -> TranscodingJob:
        raise NotImplementedError

    async def get(self, job_id: str) -> TranscodingJob:
        raise NotImplementedError

    async def update_status(self, job_id: str, status: JobStatus, **fields) -> TranscodingJob:
        raise NotImplementedError

    async def find_active_by_episode(self, episode_id: str) -> Optional[TranscodingJob]:
        raise NotImplementedError

    async def append_log(self, job_id: str, text: str) -> None:
        raise NotImplementedError

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        episode_id: Optional[str] = None,
        created_by_id: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscodingJob]:
        raise NotImplementedError

    async def count_by_status(self) -> Dict[JobStatus, int]:
        raise NotImplementedError

    async def list_finished(self) -> List[TranscodingJob]:
        raise NotImplementedError

    async def clear_logs_before(self, cutoff: datetime) -> int:
        raise NotImplementedError

    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        raise NotImplementedError

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        raise NotImplementedError

    async def set_episode_path(self, episode_id: str, path: Optional[str]) -> None:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    """Dict-backed store. Returned jobs are copies, like rows from a database."""

    def __init__(self) -> None:
        self.jobs: Dict[str, TranscodingJob] = {}
        self.uploads: Dict[str, Upload] = {}
        self.episodes: Dict[str, Episode] = {}
        self._lock = asyncio.Lock()

    def add_upload(self, upload: Upload) -> Upload:
        self.uploads[upload.id] = upload
        return upload

    def add_episode(self, episode: Episode) -> Episode:
        self.episodes[episode.id] = episode
        return episode

    @staticmethod
    def _copy(job: TranscodingJob) -> TranscodingJob:
        return replace(job, preset_info=dict(job.preset_info))

    def _require(self, job_id: str) -> TranscodingJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(self, job: TranscodingJob) -> TranscodingJob:
        async with self._lock:
            self.jobs[job.id] = self._copy(job)
            return self._copy(job)

    async def get(self, job_id: str) -> TranscodingJob:
        return self._copy(self._require(job_id))

    async def update_status(self, job_id: str, status: JobStatus, **fields) -> TranscodingJob:
        status = JobStatus(status)
        async with self._lock:
            job = self._require(job_id)
            check_transition(job, status)
            for name in fields:
                if name not in UPDATABLE_FIELDS:
                    raise ValueError(f"Cannot update field {name}")
            job.status = status
            for name, value in fields.items():
                setattr(job, name, value)
            return self._copy(job)

    async def find_active_by_episode(self, episode_id: str) -> Optional[TranscodingJob]:
        for job in self.jobs.values():
            if job.episode_id == episode_id and job.status in ACTIVE_STATUSES:
                return self._copy(job)
        return None

    async def append_log(self, job_id: str, text: str) -> None:
        async with self._lock:
            job = self._require(job_id)
            job.logs_text = (job.logs_text or "") + text

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        episode_id: Optional[str] = None,
        created_by_id: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscodingJob]:
        jobs = [
            job
            for job in self.jobs.values()
            if (status is None or job.status == status)
            and (episode_id is None or job.episode_id == episode_id)
            and (created_by_id is None or job.created_by_id == created_by_id)
            and (created_after is None or job.created_at >= created_after)
            and (created_before is None or job.created_at < created_before)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [self._copy(j) for j in jobs[offset : offset + limit]]

    async def count_by_status(self) -> Dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status] += 1
        return counts

    async def list_finished(self) -> List[TranscodingJob]:
        return [self._copy(j) for j in self.jobs.values() if j.finished_at is not None]

    async def clear_logs_before(self, cutoff: datetime) -> int:
        cleared = 0
        async with self._lock:
            for job in self.jobs.values():
                if job.created_at < cutoff and job.logs_text:
                    job.logs_text = ""
                    cleared += 1
        return cleared

    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        return self.uploads.get(upload_id)

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        return self.episodes.get(episode_id)

    async def set_episode_path(self, episode_id: str, path: Optional[str]) -> None:
        episode = self.episodes.get(episode_id)
        if episode is None:
            raise LookupError(f"Episode {episode_id} not found")
        episode.filesystem_path = path


def _load_preset_info(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Ignoring malformed preset_info: {raw[:100]!r}")
        return {}
    return value if isinstance(value, dict) else {}


def _row_to_job(row) -> TranscodingJob:
    return TranscodingJob(
        id=row["id"],
        episode_id=row["episode_id"],
        upload_id=row["upload_id"],
        status=JobStatus(row["status"]),
        created_by_id=row["created_by_id"],
        created_at=ensure_utc(row["created_at"]),
        started_at=ensure_utc(row["started_at"]),
        finished_at=ensure_utc(row["finished_at"]),
        preset_info=_load_preset_info(row["preset_info"]),
        logs_text=row["logs_text"] or "",
    )


class DatabaseJobStore(JobStore):
    """SQL-backed store using the shared tables in ``core.database``."""

    def __init__(self, db: Database):
        self.db = db

    async def _fetch_one(self, query):
        return await execute_with_retry(self.db.fetch_one, query)

    async def _fetch_all(self, query):
        return await execute_with_retry(self.db.fetch_all, query)

    async def _execute(self, query):
        return await execute_with_retry(self.db.execute, query)

    async def create(self, job: TranscodingJob) -> TranscodingJob:
        await self._execute(
            transcoding_jobs.insert().values(
                id=job.id,
                episode_id=job.episode_id,
                upload_id=job.upload_id,
                status=job.status.value,
                created_by_id=job.created_by_id,
                created_at=job.created_at,
                started_at=job.started_at,
                finished_at=job.finished_at,
                preset_info=json.dumps(job.preset_info),
                logs_text=job.logs_text or None,
            )
        )
        return await self.get(job.id)

    async def get(self, job_id: str) -> TranscodingJob:
        row = await self._fetch_one(transcoding_jobs.select().where(transcoding_jobs.c.id == job_id))
        if row is None:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    async def update_status(self, job_id: str, status: JobStatus, **fields) -> TranscodingJob:
        status = JobStatus(status)
        current = await self.get(job_id)
        check_transition(current, status)

        values: Dict[str, Any] = {"status": status.value}
        for name, value in fields.items():
            if name not in UPDATABLE_FIELDS:
                raise ValueError(f"Cannot update field {name}")
            values[name] = json.dumps(value) if name == "preset_info" else value

        # Guard on the status we validated against so a concurrent cancel
        # is not overwritten by a stale transition.
        await self._execute(
            transcoding_jobs.update()
            .where(transcoding_jobs.c.id == job_id)
            .where(transcoding_jobs.c.status == current.status.value)
            .values(**values)
        )
        updated = await self.get(job_id)
        if updated.status != status:
            raise InvalidTransitionError(job_id, updated.status.value, status.value)
        return updated

    async def find_active_by_episode(self, episode_id: str) -> Optional[TranscodingJob]:
        row = await self._fetch_one(
            transcoding_jobs.select()
            .where(transcoding_jobs.c.episode_id == episode_id)
            .where(transcoding_jobs.c.status.in_([s.value for s in ACTIVE_STATUSES]))
            .order_by(transcoding_jobs.c.created_at.desc())
            .limit(1)
        )
        return _row_to_job(row) if row else None

    async def append_log(self, job_id: str, text: str) -> None:
        # Concatenate in SQL so concurrent appends never drop lines
        await self._execute(
            transcoding_jobs.update()
            .where(transcoding_jobs.c.id == job_id)
            .values(logs_text=sa.func.coalesce(transcoding_jobs.c.logs_text, "") + text)
        )

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        episode_id: Optional[str] = None,
        created_by_id: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscodingJob]:
        query = transcoding_jobs.select()
        if status is not None:
            query = query.where(transcoding_jobs.c.status == JobStatus(status).value)
        if episode_id is not None:
            query = query.where(transcoding_jobs.c.episode_id == episode_id)
        if created_by_id is not None:
            query = query.where(transcoding_jobs.c.created_by_id == created_by_id)
        if created_after is not None:
            query = query.where(transcoding_jobs.c.created_at >= created_after)
        if created_before is not None:
            query = query.where(transcoding_jobs.c.created_at < created_before)
        query = query.order_by(transcoding_jobs.c.created_at.desc()).limit(limit).offset(offset)
        rows = await self._fetch_all(query)
        return [_row_to_job(row) for row in rows]

    async def count_by_status(self) -> Dict[JobStatus, int]:
        rows = await self._fetch_all(
            sa.select(transcoding_jobs.c.status, sa.func.count().label("count")).group_by(
                transcoding_jobs.c.status
            )
        )
        counts = {status: 0 for status in JobStatus}
        for row in rows:
            counts[JobStatus(row["status"])] = row["count"]
        return counts

    async def list_finished(self) -> List[TranscodingJob]:
        rows = await self._fetch_all(
            transcoding_jobs.select().where(transcoding_jobs.c.finished_at.isnot(None))
        )
        return [_row_to_job(row) for row in rows]

    async def clear_logs_before(self, cutoff: datetime) -> int:
        # databases does not report affected row counts portably, so select first
        rows = await self._fetch_all(
            sa.select(transcoding_jobs.c.id)
            .where(transcoding_jobs.c.created_at < cutoff)
            .where(transcoding_jobs.c.logs_text.isnot(None))
        )
        ids = [row["id"] for row in rows]
        if not ids:
            return 0
        await self._execute(
            transcoding_jobs.update().where(transcoding_jobs.c.id.in_(ids)).values(logs_text=None)
        )
        return len(ids)

    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        row = await self._fetch_one(uploads.select().where(uploads.c.id == upload_id))
        if row is None:
            return None
        return Upload(
            id=row["id"],
            stored_path=row["stored_path"],
            status=UploadStatus(row["status"]),
            original_filename=row["original_filename"],
        )

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        row = await self._fetch_one(episodes.select().where(episodes.c.id == episode_id))
        if row is None:
            return None
        return Episode(id=row["id"], title=row["title"], filesystem_path=row["filesystem_path"])

    async def set_episode_path(self, episode_id: str, path: Optional[str]) -> None:
        if await self.get_episode(episode_id) is None:
            raise LookupError(f"Episode {episode_id} not found")
        await self._execute(
            episodes.update().where(episodes.c.id == episode_id).values(filesystem_path=path)
        )
