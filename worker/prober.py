"""
Media probing with ffprobe.

Extracts the properties the rendition planner and encoder need from a source
file, and rejects files that cannot be transcoded before any encode starts.
"""

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from config import PROBE_TIMEOUT
from core.errors import ProbeError

logger = logging.getLogger(__name__)

# Maximum video duration allowed (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60  # 604800 seconds


@dataclass
class MediaInfo:
    width: int
    height: int
    duration_seconds: float
    has_video_stream: bool = True
    codec: str = "unknown"
    # Overall bitrate in bits per second, None when neither reported nor derivable
    bitrate: Optional[int] = None


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Args:
        duration: Duration value from ffprobe (accepts any input type)

    Returns:
        Validated duration as float

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    # Catches corrupted container metadata
    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


def _parse_int(value: Any) -> Optional[int]:
    try:
        result = int(float(value))
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


def parse_probe_output(data: dict, file_size: Optional[int] = None) -> MediaInfo:
    """
    Build MediaInfo from parsed ``ffprobe -show_format -show_streams`` JSON.

    Raises:
        ProbeError: no video stream, or an invalid duration
    """
    video_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            video_stream = stream
            break

    if video_stream is None:
        raise ProbeError("No video stream found")

    fmt = data.get("format", {})
    # Some containers only report duration on the stream
    raw_duration = fmt.get("duration", video_stream.get("duration"))
    try:
        duration = validate_duration(raw_duration)
    except ValueError as e:
        raise ProbeError(str(e)) from e

    width = _parse_int(video_stream.get("width"))
    height = _parse_int(video_stream.get("height"))
    if not width or not height:
        raise ProbeError(f"Video stream has invalid dimensions: {video_stream.get('width')}x{video_stream.get('height')}")

    bitrate = _parse_int(fmt.get("bit_rate"))
    if bitrate is None:
        size = _parse_int(fmt.get("size")) or file_size
        if size:
            bitrate = int(size * 8 / duration)

    return MediaInfo(
        width=width,
        height=height,
        duration_seconds=duration,
        has_video_stream=True,
        codec=video_stream.get("codec_name", "unknown"),
        bitrate=bitrate,
    )


class MediaProber:
    """Runs ffprobe under a timeout and validates what it reports."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = PROBE_TIMEOUT):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    async def probe(self, path: Path) -> MediaInfo:
        """Get video metadata for ``path``.

        Raises:
            ProbeError: If the file is unusable, or ffprobe fails or times out
        """
        path = Path(path)
        if not path.is_file():
            raise ProbeError(f"Source file not found: {path}")
        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise ProbeError(f"Source file is not readable: {e}") from e
        if file_size == 0:
            raise ProbeError(f"Source file is empty: {path}")

        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ProbeError(f"Could not start ffprobe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProbeError(f"ffprobe timed out after {self.timeout}s (file may be on slow storage or corrupted)")

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="ignore").strip()
            raise ProbeError(f"ffprobe failed with exit code {process.returncode}: {message[:500]}")

        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore"))
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProbeError("ffprobe returned unexpected output")

        info = parse_probe_output(data, file_size=file_size)
        logger.debug(
            f"Probed {path.name}: {info.width}x{info.height}, {info.duration_seconds:.1f}s, "
            f"codec={info.codec}, bitrate={info.bitrate}"
        )
        return info
