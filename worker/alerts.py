"""
Webhook alerts for worker events.

Posts a JSON document to ``STRELITZIA_ALERT_WEBHOOK_URL`` when a job fails
and when a worker starts or stops. Alerts of the same type are rate limited
so a broken source that fails every retry does not flood the channel.
Nothing in this module raises into the worker loop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

import config

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    JOB_FAILED = "job_failed"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Counters reported in every alert payload, plus rate limiter state."""

    jobs_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # alert type -> monotonic time of the last delivered alert
    last_alert_time: Dict[str, float] = field(default_factory=dict)
    episode_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_failed(self, episode_id: Optional[str] = None) -> int:
        self.jobs_failed += 1
        if episode_id is not None:
            self.episode_failure_counts[episode_id] = self.episode_failure_counts.get(episode_id, 0) + 1
        return self.jobs_failed

    def get_episode_failure_count(self, episode_id: str) -> int:
        return self.episode_failure_counts.get(episode_id, 0)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        sent_at = self.last_alert_time.get(alert_type)
        return sent_at is None or time.monotonic() - sent_at >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.monotonic()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobs_failed": self.jobs_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "episodes_with_failures": len(self.episode_failure_counts),
        }


_metrics: Optional[AlertMetrics] = None

# Pending alert tasks; the event loop only keeps weak references
_background_tasks: Set[asyncio.Task] = set()


def get_metrics() -> AlertMetrics:
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Start over with fresh counters. Used by tests."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Run an alert coroutine in the background without awaiting it.

    Used from the job failure path so a slow or unreachable webhook never
    delays the next job. Errors are logged at debug level.
    """

    async def _run():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Background alert failed: {e}")

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running event loop, dropping alert")
        coro.close()
        return

    task = loop.create_task(_run())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Deliver one alert to the webhook.

    Args:
        alert_type: Event name placed in the payload
        details: Event specific fields
        force: Skip the per-type rate limit (lifecycle events)

    Returns:
        Whether the webhook accepted the alert. False when alerts are
        disabled, rate limited, or delivery failed.
    """
    url = config.ALERT_WEBHOOK_URL
    if not url:
        return False

    metrics = get_metrics()
    if not force and not metrics.can_send_alert(alert_type.value, config.ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Suppressed {alert_type.value} alert (rate limit)")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=config.ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Webhook did not answer within {config.ALERT_WEBHOOK_TIMEOUT}s ({alert_type.value})")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Webhook rejected {alert_type.value} alert with HTTP {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.record_alert_failed()
        logger.warning(f"Could not deliver {alert_type.value} alert: {e}")
        return False

    metrics.record_alert_sent(alert_type.value)
    logger.info(f"Delivered {alert_type.value} alert")
    return True


async def alert_job_failed(job_id: str, episode_id: str, stage: str, error: str):
    """Report a failed job. The error text is cut to ERROR_DETAIL_MAX_LENGTH."""
    metrics = get_metrics()
    metrics.increment_failed(episode_id)

    await send_webhook_alert(
        AlertType.JOB_FAILED,
        {
            "job_id": job_id,
            "episode_id": episode_id,
            "stage": stage,
            "error": error[: config.ERROR_DETAIL_MAX_LENGTH] if error else None,
            "episode_failure_count": metrics.get_episode_failure_count(episode_id),
        },
    )


async def alert_worker_startup(worker_id: str, queue_backend: str):
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {"worker_id": worker_id, "queue_backend": queue_backend},
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_processed: int = 0):
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_processed": jobs_processed,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
