"""Tests for the worker alerting system."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

import config
from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_job_failed,
    alert_worker_shutdown,
    alert_worker_startup,
    get_metrics,
    reset_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Reset metrics before each test."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def webhook(monkeypatch):
    """Configure a webhook URL and mock the HTTP client."""
    monkeypatch.setattr(config, "ALERT_WEBHOOK_URL", "https://hooks.example.com/alerts")
    monkeypatch.setattr(config, "ALERT_RATE_LIMIT_SECONDS", 300)

    response = MagicMock()
    response.raise_for_status = MagicMock()
    client = AsyncMock()
    client.post = AsyncMock(return_value=response)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)

    with patch("worker.alerts.httpx.AsyncClient", return_value=client):
        yield client


class TestAlertMetrics:
    """Tests for AlertMetrics class."""

    def test_initial_state(self):
        """Test initial counter values."""
        metrics = AlertMetrics()
        assert metrics.jobs_failed == 0
        assert metrics.alerts_sent == 0
        assert metrics.alerts_rate_limited == 0
        assert metrics.alerts_failed == 0

    def test_increment_failed_tracks_episodes(self):
        """Failures are counted in total and per episode."""
        metrics = AlertMetrics()
        metrics.increment_failed("ep-1")
        metrics.increment_failed("ep-1")
        assert metrics.increment_failed("ep-2") == 3
        assert metrics.get_episode_failure_count("ep-1") == 2
        assert metrics.to_dict()["episodes_with_failures"] == 2

    def test_rate_limit(self):
        """An alert type is blocked until the interval has passed."""
        metrics = AlertMetrics()
        assert metrics.can_send_alert("job_failed", 300)
        metrics.record_alert_sent("job_failed")
        assert not metrics.can_send_alert("job_failed", 300)
        assert metrics.can_send_alert("worker_startup", 300)
        assert metrics.can_send_alert("job_failed", 0)


class TestSendWebhookAlert:
    """Tests for send_webhook_alert."""

    @pytest.mark.asyncio
    async def test_disabled_without_url(self, monkeypatch):
        """No URL configured means nothing is sent."""
        monkeypatch.setattr(config, "ALERT_WEBHOOK_URL", "")
        assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False

    @pytest.mark.asyncio
    async def test_sends_payload(self, webhook):
        """Payload carries event, timestamp, details and metrics."""
        assert await send_webhook_alert(AlertType.JOB_FAILED, {"job_id": "j1"}) is True

        url = webhook.post.call_args.args[0]
        payload = webhook.post.call_args.kwargs["json"]
        assert url == "https://hooks.example.com/alerts"
        assert payload["event"] == "job_failed"
        assert payload["details"] == {"job_id": "j1"}
        assert "timestamp" in payload
        assert get_metrics().alerts_sent == 1

    @pytest.mark.asyncio
    async def test_rate_limited(self, webhook):
        """A second alert of the same type within the window is dropped."""
        await send_webhook_alert(AlertType.JOB_FAILED, {})
        assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False
        assert webhook.post.await_count == 1
        assert get_metrics().alerts_rate_limited == 1

    @pytest.mark.asyncio
    async def test_force_bypasses_rate_limit(self, webhook):
        """Forced alerts are always sent."""
        await send_webhook_alert(AlertType.WORKER_STARTUP, {})
        assert await send_webhook_alert(AlertType.WORKER_STARTUP, {}, force=True) is True

    @pytest.mark.asyncio
    async def test_timeout(self, webhook):
        """A timeout is counted and reported as failure."""
        webhook.post.side_effect = httpx.TimeoutException("timed out")
        assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False
        assert get_metrics().alerts_failed == 1

    @pytest.mark.asyncio
    async def test_http_error_status(self, webhook):
        """A non-2xx response is counted and reported as failure."""
        request = httpx.Request("POST", "https://hooks.example.com/alerts")
        response = httpx.Response(500, request=request)
        webhook.post.return_value = MagicMock(
            raise_for_status=MagicMock(
                side_effect=httpx.HTTPStatusError("server error", request=request, response=response)
            )
        )
        assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False
        assert get_metrics().alerts_failed == 1


class TestAlertHelpers:
    @pytest.mark.asyncio
    async def test_alert_job_failed(self, webhook, monkeypatch):
        """Error text is truncated to the detail limit."""
        monkeypatch.setattr(config, "ERROR_DETAIL_MAX_LENGTH", 10)

        await alert_job_failed("job-1", "ep-1", "encode", "x" * 50)

        details = webhook.post.call_args.kwargs["json"]["details"]
        assert details["job_id"] == "job-1"
        assert details["stage"] == "encode"
        assert details["error"] == "x" * 10
        assert details["episode_failure_count"] == 1
        assert get_metrics().jobs_failed == 1

    @pytest.mark.asyncio
    async def test_lifecycle_alerts(self, webhook):
        await alert_worker_startup("worker-1", "redis")
        await alert_worker_shutdown("worker-1", jobs_processed=7)

        events = [c.kwargs["json"]["event"] for c in webhook.post.call_args_list]
        assert events == ["worker_startup", "worker_shutdown"]
        assert webhook.post.call_args.kwargs["json"]["details"]["jobs_processed"] == 7


class TestFireAndForget:
    @pytest.mark.asyncio
    async def test_runs_in_background(self):
        """The coroutine runs as a task and errors are swallowed."""
        ran = asyncio.Event()

        async def failing_alert():
            ran.set()
            raise RuntimeError("webhook exploded")

        send_alert_fire_and_forget(failing_alert())
        await asyncio.wait_for(ran.wait(), timeout=1)
        await asyncio.sleep(0)

    def test_without_event_loop(self):
        """Outside an event loop the coroutine is closed instead of scheduled."""
        coro = AsyncMock()()
        send_alert_fire_and_forget(coro)
        assert coro.cr_frame is None
