"""
Centralized enums for status values used throughout the transcoder.
Using str-based enums for database compatibility.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Status values for a transcoding job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


# A job never leaves one of these statuses
TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED})

# Statuses that count against the one-active-job-per-episode rule
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})

# Statuses an operator may retry from
RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether a job may move from ``current`` to ``target``."""
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


class PipelineStage(str, Enum):
    """Pipeline stage names, used to tag failures in job logs."""

    PRECHECK = "precheck"
    PROBE = "probe"
    PLAN = "plan"
    ENCODE = "encode"
    COMPOSE = "compose"
    FINALIZE = "finalize"


class UploadStatus(str, Enum):
    """Status values for uploaded source files."""

    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
