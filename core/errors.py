"""
Exception taxonomy for the transcoding pipeline and job operations.

Pipeline errors carry the stage they were raised in so the worker can tag
the final log line, e.g. ``FINAL ERROR [encode]: ...``.
"""

from typing import Optional

from core.enums import PipelineStage


def truncate_error(message: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate an error message to fit a storage or display limit.

    Args:
        message: The message to truncate (None passes through)
        max_length: Maximum length of the returned string, including the ellipsis

    Returns:
        The message unchanged if it fits, otherwise cut and suffixed with "..."
    """
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    if max_length <= 3:
        return message[:max_length]
    return message[: max_length - 3] + "..."


class TranscodeError(Exception):
    """Base class for failures inside the transcoding pipeline."""

    # None means "whatever stage the pipeline was in"
    stage: Optional[PipelineStage] = None

    def __init__(self, message: str, stage: Optional[PipelineStage] = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class ProbeError(TranscodeError):
    """Source file is missing, unreadable, or not a usable video."""

    stage = PipelineStage.PROBE


class UnsupportedResolutionError(TranscodeError):
    """Source is smaller than the lowest rung of the rendition ladder."""

    stage = PipelineStage.PLAN

    def __init__(self, source_height: int, min_height: int):
        super().__init__(
            f"Source height {source_height}p is below the minimum supported rendition ({min_height}p)"
        )
        self.source_height = source_height
        self.min_height = min_height


class EncodeError(TranscodeError):
    """FFmpeg failed, timed out, or produced an incomplete rendition."""

    stage = PipelineStage.ENCODE

    def __init__(
        self,
        rendition: str,
        message: str,
        exit_code: Optional[int] = None,
        stderr_tail: str = "",
    ):
        super().__init__(f"{rendition}: {message}")
        self.rendition = rendition
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class FinalizeError(TranscodeError):
    """Publishing output or recording success failed."""

    stage = PipelineStage.FINALIZE


class JobCancelledError(TranscodeError):
    """Raised inside the pipeline when an operator cancelled the running job."""


class QueueLossError(Exception):
    """
    The job row exists but its queue reference could not be pushed.

    The job stays pending until something re-pushes it or an operator
    cancels it; see ``JobService.find_stale_pending``.
    """

    def __init__(self, job_id: str, cause: Exception):
        super().__init__(f"Job {job_id} was created but could not be queued: {cause}")
        self.job_id = job_id
        self.cause = cause


class JobNotFoundError(Exception):
    """No job with the given id exists."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(Exception):
    """A status change would violate the job state machine."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobConflictError(Exception):
    """An active (pending or running) job already exists for the episode."""

    def __init__(self, episode_id: str, job_id: str):
        super().__init__(f"Episode {episode_id} already has an active transcoding job ({job_id})")
        self.episode_id = episode_id
        self.job_id = job_id


class JobValidationError(Exception):
    """A job request references missing or unusable records."""
