"""Tests for the worker health/readiness/metrics HTTP server."""

import asyncio
import json
from http import HTTPStatus
from unittest.mock import AsyncMock, patch

import pytest

from worker.health_server import HealthServer


def all_binaries(name):
    return f"/usr/bin/{name}"


class TestBuildResponse:
    @pytest.mark.asyncio
    async def test_health(self):
        status, content_type, body = await HealthServer(port=0).build_response("/health")

        assert status == HTTPStatus.OK
        assert content_type == "application/json"
        assert json.loads(body) == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_ready(self):
        """Ready when both binaries exist and the queue answers."""
        server = HealthServer(port=0, queue_check_fn=AsyncMock(return_value=True))

        with patch("worker.health_server.shutil.which", side_effect=all_binaries):
            status, _, body = await server.build_response("/ready")

        assert status == HTTPStatus.OK
        data = json.loads(body)
        assert data["status"] == "ready"
        assert data["checks"] == {"ffmpeg": True, "ffprobe": True, "queue": True}

    @pytest.mark.asyncio
    async def test_not_ready_without_ffmpeg(self):
        server = HealthServer(port=0)

        with patch("worker.health_server.shutil.which", return_value=None):
            status, _, body = await server.build_response("/ready")

        assert status == HTTPStatus.SERVICE_UNAVAILABLE
        assert json.loads(body)["checks"]["ffmpeg"] is False

    @pytest.mark.asyncio
    async def test_not_ready_when_queue_check_raises(self):
        server = HealthServer(port=0, queue_check_fn=AsyncMock(side_effect=ConnectionError("redis down")))

        with patch("worker.health_server.shutil.which", side_effect=all_binaries):
            status, _, body = await server.build_response("/ready")

        assert status == HTTPStatus.SERVICE_UNAVAILABLE
        assert json.loads(body)["checks"]["queue"] is False

    @pytest.mark.asyncio
    async def test_metrics(self):
        status, content_type, body = await HealthServer(port=0).build_response("/metrics")

        assert status == HTTPStatus.OK
        assert content_type.startswith("text/plain")
        assert b"strelitzia_jobs_finished_total" in body

    @pytest.mark.asyncio
    async def test_unknown_path(self):
        status, _, _ = await HealthServer(port=0).build_response("/nope")
        assert status == HTTPStatus.NOT_FOUND


class TestServerLifecycle:
    @pytest.mark.asyncio
    async def test_serves_http_over_tcp(self):
        server = HealthServer(port=0, host="127.0.0.1")
        await server.start()
        try:
            port = server._server.sockets[0].getsockname()[1]
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"GET /health HTTP/1.1\r\nHost: localhost\r\n\r\n")
            await writer.drain()
            response = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
        finally:
            await server.stop()

        assert response.startswith(b"HTTP/1.1 200 OK")
        assert b'{"status": "alive"}' in response

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await HealthServer(port=0).stop()
