"""
Publishing a finished encode.

Order of operations:
1. copy rendition directories into the permanent episode directory, then
   write master.m3u8 last so a reader never sees a master without variants
2. point the episode at the permanent master playlist
3. mark the job success with the output summary
4. delete the uploaded source unless the job keeps the original
5. remove the job work directory

Every step can be repeated safely. Steps 1-3 raise FinalizeError. If step 3
fails the episode path is put back first, and a job cancelled during publishing
raises JobCancelledError instead. Steps 4-5 run after the job is durably
successful, so their failures are only logged.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from config import STORAGE_ROOT
from core.enums import JobStatus
from core.errors import FinalizeError, InvalidTransitionError, JobCancelledError
from core.job_store import JobStore, PresetInfo, TranscodingJob
from worker.job_log import JobLog
from worker.planner import Rendition
from worker.playlist import write_master_playlist

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    output_dir: Path
    master_playlist_path: Path
    warnings: List[str] = field(default_factory=list)


class OutputFinalizer:
    def __init__(self, store: JobStore, storage_root: Path = STORAGE_ROOT):
        self.store = store
        self.storage_root = Path(storage_root)

    def output_dir_for(self, episode_id: str) -> Path:
        return self.storage_root / episode_id

    def publish(self, episode_id: str, work_dir: Path, renditions: Sequence[Rendition]) -> Path:
        """Copy renditions and write the master playlist. Returns the master path."""
        output_dir = self.output_dir_for(episode_id)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            for rendition in renditions:
                src = Path(work_dir) / rendition.name
                if not src.is_dir():
                    raise FinalizeError(f"Rendition output missing from work directory: {src}")
                # Copy, not move: the work copy survives a crash mid-copy
                shutil.copytree(src, output_dir / rendition.name, dirs_exist_ok=True)
            return write_master_playlist(output_dir, renditions)
        except FinalizeError:
            raise
        except (OSError, shutil.Error) as e:
            raise FinalizeError(f"Failed to copy output to {output_dir}: {e}") from e

    async def finalize(
        self,
        job: TranscodingJob,
        work_dir: Path,
        renditions: Sequence[Rendition],
        source_path: Optional[Path],
        preferences: Optional[PresetInfo] = None,
        job_log: Optional[JobLog] = None,
    ) -> FinalizeResult:
        preferences = preferences or job.preferences
        job_log = job_log or JobLog(self.store, job.id)

        master_path = self.publish(job.episode_id, work_dir, renditions)
        output_dir = master_path.parent
        await job_log.info(f"Published {len(renditions)} renditions to {output_dir}")

        try:
            episode = await self.store.get_episode(job.episode_id)
            previous_path = episode.filesystem_path if episode is not None else None
            await self.store.set_episode_path(job.episode_id, str(master_path))
        except Exception as e:
            raise FinalizeError(f"Failed to update episode {job.episode_id}: {e}") from e

        summary = {
            **job.preset_info,
            "resolutions": [r.name for r in renditions],
            "outputDir": str(output_dir),
            "masterPlaylistPath": str(master_path),
        }
        try:
            await self.store.update_status(
                job.id,
                JobStatus.SUCCESS,
                finished_at=datetime.now(timezone.utc),
                preset_info=summary,
            )
        except InvalidTransitionError as e:
            # Cancelled while publishing: the episode keeps its previous output
            await self._restore_episode_path(job.episode_id, previous_path, job_log)
            if e.current == JobStatus.CANCELLED:
                raise JobCancelledError("Job was cancelled while publishing output") from e
            raise FinalizeError(f"Failed to mark job {job.id} successful: {e}") from e
        except Exception as e:
            await self._restore_episode_path(job.episode_id, previous_path, job_log)
            raise FinalizeError(f"Failed to mark job {job.id} successful: {e}") from e

        result = FinalizeResult(output_dir=output_dir, master_playlist_path=master_path)

        if not preferences.keep_original and source_path is not None:
            try:
                Path(source_path).unlink(missing_ok=True)
                await job_log.info(f"Deleted source file {source_path}")
            except OSError as e:
                result.warnings.append(f"Could not delete source file {source_path}: {e}")

        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            result.warnings.append(f"Could not remove work directory {work_dir}: {e}")

        for warning in result.warnings:
            await job_log.warning(warning)

        return result

    async def _restore_episode_path(self, episode_id: str, path: Optional[str], job_log: JobLog) -> None:
        try:
            await self.store.set_episode_path(episode_id, path)
        except Exception as e:
            await job_log.error(f"Could not restore episode {episode_id} path to {path}: {e}")
