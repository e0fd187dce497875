"""
Prometheus metrics for the transcoding worker and job service.

Metrics are exposed at the worker's /metrics endpoint in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

APP_INFO = Info("strelitzia_transcoder", "Strelitzia transcoder information")

# =============================================================================
# Job Metrics
# =============================================================================

JOBS_ENQUEUED_TOTAL = Counter(
    "strelitzia_jobs_enqueued_total",
    "Total transcoding jobs created by the job service",
    ["result"],  # queued, queue_lost
)

JOBS_FINISHED_TOTAL = Counter(
    "strelitzia_jobs_finished_total",
    "Total transcoding jobs finished by workers",
    ["status"],  # success, failed, cancelled
)

JOBS_ACTIVE = Gauge(
    "strelitzia_jobs_active",
    "Number of jobs currently being processed by this worker",
)

JOB_DURATION_SECONDS = Histogram(
    "strelitzia_job_duration_seconds",
    "Wall-clock duration of a transcoding job in seconds",
    ["status"],
    buckets=[30, 60, 120, 300, 600, 1200, 1800, 3600, 7200],
)

RENDITION_ENCODE_SECONDS = Histogram(
    "strelitzia_rendition_encode_seconds",
    "FFmpeg encode duration per rendition in seconds",
    ["rendition"],
    buckets=[10, 30, 60, 120, 300, 600, 1200, 1800, 3600],
)

# =============================================================================
# Queue Metrics
# =============================================================================

QUEUE_POPS_TOTAL = Counter(
    "strelitzia_queue_pops_total",
    "Blocking pops against the work queue",
    ["result"],  # job, empty, error
)

QUEUE_MALFORMED_TOTAL = Counter(
    "strelitzia_queue_malformed_total",
    "Queue payloads dropped because they could not be decoded",
)

# =============================================================================
# Database Metrics
# =============================================================================

DB_RETRIES_TOTAL = Counter(
    "strelitzia_db_retries_total",
    "Total database query retries due to transient errors",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "strelitzia-transcoder"})
