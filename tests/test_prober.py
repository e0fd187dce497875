"""Tests for ffprobe media probing."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.enums import PipelineStage
from core.errors import ProbeError
from tests.fixtures.sample_media import probe_data
from worker.prober import MAX_DURATION_SECONDS, MediaProber, parse_probe_output, validate_duration


def mock_process(stdout=b"", stderr=b"", returncode=0):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.returncode = returncode
    process.kill = MagicMock()
    process.wait = AsyncMock(return_value=returncode)
    return process


class TestValidateDuration:
    def test_accepts_string(self):
        assert validate_duration("12.5") == 12.5

    @pytest.mark.parametrize("value", [None, "abc", float("nan"), float("inf"), 0, -3])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            validate_duration(value)

    def test_rejects_too_long(self):
        with pytest.raises(ValueError, match="too long"):
            validate_duration(MAX_DURATION_SECONDS + 1)


class TestParseProbeOutput:
    def test_basic(self):
        info = parse_probe_output(probe_data())

        assert info.width == 1920
        assert info.height == 1080
        assert info.duration_seconds == 120.5
        assert info.codec == "h264"
        assert info.bitrate == 5_000_000
        assert info.has_video_stream is True

    def test_bitrate_derived_from_size(self):
        data = probe_data(duration="10", bit_rate=None)
        data["format"]["size"] = "1250000"
        assert parse_probe_output(data).bitrate == 1_000_000

    def test_bitrate_derived_from_file_size(self):
        info = parse_probe_output(probe_data(duration="10", bit_rate=None), file_size=2_500_000)
        assert info.bitrate == 2_000_000

    def test_bitrate_unknown(self):
        assert parse_probe_output(probe_data(bit_rate=None)).bitrate is None

    def test_duration_from_stream(self):
        data = probe_data()
        del data["format"]["duration"]
        data["streams"][-1]["duration"] = "33.0"
        assert parse_probe_output(data).duration_seconds == 33.0

    def test_no_video_stream(self):
        data = {"streams": [{"codec_type": "audio"}], "format": {"duration": "10"}}
        with pytest.raises(ProbeError, match="No video stream") as exc_info:
            parse_probe_output(data)
        assert exc_info.value.stage == PipelineStage.PROBE

    def test_missing_duration(self):
        data = probe_data()
        del data["format"]["duration"]
        with pytest.raises(ProbeError, match="duration"):
            parse_probe_output(data)

    def test_invalid_dimensions(self):
        with pytest.raises(ProbeError, match="invalid dimensions"):
            parse_probe_output(probe_data(width=0))


class TestMediaProber:
    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(ProbeError, match="not found"):
            await MediaProber().probe(tmp_path / "missing.mp4")

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.mp4"
        path.touch()
        with pytest.raises(ProbeError, match="empty"):
            await MediaProber().probe(path)

    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        path = tmp_path / "video.mp4"
        path.write_bytes(b"data")
        process = mock_process(stdout=json.dumps(probe_data(width=1280, height=720)).encode())

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as mock_exec:
            info = await MediaProber(ffprobe_path="/usr/bin/ffprobe").probe(path)

        assert (info.width, info.height) == (1280, 720)
        args = mock_exec.call_args[0]
        assert args[0] == "/usr/bin/ffprobe"
        assert args[-1] == str(path)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path):
        path = tmp_path / "video.mp4"
        path.write_bytes(b"data")
        process = mock_process(stderr=b"Invalid data found", returncode=1)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProbeError, match="exit code 1: Invalid data found"):
                await MediaProber().probe(path)

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path):
        path = tmp_path / "video.mp4"
        path.write_bytes(b"data")
        process = mock_process(stdout=b"not json")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProbeError, match="invalid JSON"):
                await MediaProber().probe(path)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        path = tmp_path / "video.mp4"
        path.write_bytes(b"data")
        process = mock_process()

        async def hang():
            await asyncio.sleep(10)

        process.communicate = hang

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ProbeError, match="timed out"):
                await MediaProber(timeout=0.05).probe(path)
        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_ffprobe_not_installed(self, tmp_path):
        path = tmp_path / "video.mp4"
        path.write_bytes(b"data")

        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("ffprobe"))):
            with pytest.raises(ProbeError, match="Could not start ffprobe"):
                await MediaProber().probe(path)
