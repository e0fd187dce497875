"""Per-job execution log, appended to the job's logs_text as the job runs."""

import logging
from datetime import datetime, timezone

from core.job_store import JobStore

logger = logging.getLogger(__name__)


class JobLog:
    """
    Writes timestamped lines to a job's logs_text and mirrors them to the
    process log.

    Each line is persisted immediately so a crash mid-job still leaves the
    diagnostics written so far.
    """

    def __init__(self, store: JobStore, job_id: str):
        self.store = store
        self.job_id = job_id

    async def write(self, level: int, message: str) -> None:
        logger.log(level, f"[job {self.job_id}] {message}")
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        line = f"[{timestamp}] {logging.getLevelName(level)}: {message}\n"
        try:
            await self.store.append_log(self.job_id, line)
        except Exception as e:
            # The process log above still has the line
            logger.warning(f"Could not persist log line for job {self.job_id}: {e}")

    async def info(self, message: str) -> None:
        await self.write(logging.INFO, message)

    async def warning(self, message: str) -> None:
        await self.write(logging.WARNING, message)

    async def error(self, message: str) -> None:
        await self.write(logging.ERROR, message)

    async def raw(self, text: str) -> None:
        """Append text verbatim, e.g. a traceback block."""
        try:
            await self.store.append_log(self.job_id, text)
        except Exception as e:
            logger.warning(f"Could not persist log text for job {self.job_id}: {e}")
