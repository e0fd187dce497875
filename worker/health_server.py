"""
Health check HTTP server for transcoding workers.

Endpoints:
- /health (liveness): process is running
- /ready (readiness): ffmpeg and ffprobe are installed and the queue answers
- /metrics: Prometheus text format

Runs on HEALTH_PORT (default 8080); port 0 disables it.
"""

import asyncio
import json
import logging
import shutil
from http import HTTPStatus
from typing import Awaitable, Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST

from config import HEALTH_PORT
from core.metrics import get_metrics

logger = logging.getLogger(__name__)


class HealthServer:
    """Simple async HTTP health server for worker liveness/readiness probes."""

    def __init__(
        self,
        port: int = HEALTH_PORT,
        queue_check_fn: Optional[Callable[[], Awaitable[bool]]] = None,
        host: str = "0.0.0.0",
    ):
        """
        Initialize health server.

        Args:
            port: Port to listen on
            queue_check_fn: Optional async callback that returns True if the work queue is reachable
            host: Interface to bind
        """
        self.port = port
        self.host = host
        self.queue_check_fn = queue_check_fn
        self._server: Optional[asyncio.Server] = None

    def _check_binaries(self) -> dict:
        return {
            "ffmpeg": shutil.which("ffmpeg") is not None,
            "ffprobe": shutil.which("ffprobe") is not None,
        }

    async def _check_queue(self) -> bool:
        if self.queue_check_fn is None:
            return True
        try:
            return bool(await asyncio.wait_for(self.queue_check_fn(), timeout=3.0))
        except Exception as e:
            logger.debug(f"Queue readiness check failed: {e}")
            return False

    async def build_response(self, path: str):
        """Return (status, content_type, body) for a request path."""
        if path == "/health":
            return HTTPStatus.OK, "application/json", json.dumps({"status": "alive"}).encode()

        if path == "/ready":
            checks = self._check_binaries()
            checks["queue"] = await self._check_queue()
            all_ok = all(checks.values())
            status = HTTPStatus.OK if all_ok else HTTPStatus.SERVICE_UNAVAILABLE
            body = {"status": "ready" if all_ok else "not_ready", "checks": checks}
            return status, "application/json", json.dumps(body).encode()

        if path == "/metrics":
            return HTTPStatus.OK, CONTENT_TYPE_LATEST, get_metrics()

        return HTTPStatus.NOT_FOUND, "application/json", json.dumps({"error": "not found"}).encode()

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle incoming HTTP request."""
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            parts = request_line.decode("utf-8", errors="replace").split()
            path = parts[1] if len(parts) > 1 else "/"

            # Drain remaining headers (we don't need them)
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            status, content_type, body = await self.build_response(path)
            head = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
            )
            writer.write(head.encode() + body)
            await writer.drain()
        except asyncio.TimeoutError:
            pass
        except (ConnectionError, OSError) as e:
            logger.debug(f"Health request failed: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def start(self):
        """Start the health server."""
        self._server = await asyncio.start_server(self._handle_request, self.host, self.port)
        logger.info(f"Health server listening on port {self.port}")

    async def stop(self):
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
