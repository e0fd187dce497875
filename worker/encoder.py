"""
HLS encoding with FFmpeg.

One FFmpeg process per rendition, run sequentially. Each process has a
timeout scaled by duration and target height, reports progress on stdout
(``-progress pipe:1``), and keeps the tail of stderr for diagnostics.

Output layout inside the job work directory:

    <work_dir>/<rendition>/playlist.m3u8
    <work_dir>/<rendition>/segment_000.ts, segment_001.ts, ...
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from config import (
    AUDIO_SAMPLE_RATE,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    HLS_SEGMENT_DURATION,
    X264_PRESET,
)
from core import metrics
from core.errors import EncodeError
from worker.planner import Rendition

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"

# Lines of ffmpeg stderr kept for error reports
STDERR_TAIL_LINES = 30

ProgressCallback = Callable[[Rendition, int], Awaitable[None]]
BeforeRenditionHook = Callable[[Rendition, int, int], Awaitable[None]]


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Calculate appropriate timeout for ffmpeg based on video duration and resolution.

    Higher resolutions take longer to encode, so timeouts scale accordingly.

    Args:
        duration: Video duration in seconds
        height: Target resolution height (e.g., 360, 720, 1080, 2160)

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    # Unknown heights (e.g. a pass-through original) use the 1080p multiplier
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    effective_multiplier = FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    timeout = duration * effective_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


def _kbps(bits_per_second: float) -> str:
    return f"{int(bits_per_second // 1000)}k"


def build_ffmpeg_command(
    input_path: Path,
    rendition: Rendition,
    output_dir: Path,
    ffmpeg_path: str = "ffmpeg",
    segment_duration: int = HLS_SEGMENT_DURATION,
    preset: str = X264_PRESET,
) -> List[str]:
    """Build the ffmpeg argument list for one rendition."""
    cmd = [ffmpeg_path, "-y", "-hide_banner", "-nostats", "-loglevel", "warning", "-i", str(input_path)]

    if rendition.passthrough:
        # Remux without re-encoding
        cmd += ["-c", "copy"]
    else:
        w, h = rendition.width, rendition.height
        cmd += [
            "-c:v",
            "libx264",
            "-preset",
            preset,
            "-b:v",
            _kbps(rendition.video_bitrate),
            "-maxrate",
            _kbps(rendition.video_bitrate * 1.5),
            "-bufsize",
            _kbps(rendition.video_bitrate * 2),
            "-vf",
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
            "-c:a",
            "aac",
            "-b:a",
            _kbps(rendition.audio_bitrate),
            "-ar",
            str(AUDIO_SAMPLE_RATE),
        ]

    cmd += [
        "-hls_time",
        str(segment_duration),
        "-hls_playlist_type",
        "vod",
        "-hls_list_size",
        "0",
        "-hls_segment_filename",
        str(output_dir / SEGMENT_PATTERN),
        "-progress",
        "pipe:1",
        "-f",
        "hls",
        str(output_dir / PLAYLIST_NAME),
    ]
    return cmd


@dataclass
class FFmpegResult:
    returncode: Optional[int]
    timed_out: bool
    stderr_tail: str
    elapsed_seconds: float

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill an FFmpeg subprocess if it is still running and reap it.

    The process may exit between checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[Callable[[int], Awaitable[None]]] = None,
    context: str = "FFmpeg",
) -> FFmpegResult:
    """
    Run an FFmpeg command with timeout and progress tracking.

    stdout carries ``-progress`` key=value lines; stderr is drained
    concurrently into a bounded buffer so a chatty encoder never blocks on a
    full pipe.

    Args:
        cmd: FFmpeg command as list of arguments
        duration: Video duration in seconds (for progress calculation)
        timeout: Maximum time to wait for FFmpeg to complete
        progress_callback: Optional async callback for progress updates (0-100)
        context: Description for logging

    Returns:
        FFmpegResult with exit code, timeout flag and stderr tail
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    loop = asyncio.get_running_loop()
    start_time = loop.time()
    stderr_lines: deque = deque(maxlen=STDERR_TAIL_LINES)
    last_progress_update = 0
    timed_out = False

    async def read_progress():
        nonlocal last_progress_update
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()

            # Format: out_time_ms=123456789 (microseconds despite the name)
            if line_str.startswith("out_time_ms="):
                try:
                    time_ms = int(line_str.split("=")[1])
                except (ValueError, IndexError):
                    continue
                current_seconds = time_ms / 1000000.0
                if duration > 0:
                    progress = min(100, int(current_seconds / duration * 100))
                    if progress > last_progress_update:
                        last_progress_update = progress
                        if progress_callback:
                            await progress_callback(progress)

    async def read_stderr():
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="ignore").rstrip()
            if text:
                stderr_lines.append(text)

    async def drain_and_wait():
        await asyncio.gather(read_progress(), read_stderr())
        await process.wait()

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        elapsed = loop.time() - start_time
        logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s), killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    # Killing the process closes its pipes, which ends drain_and_wait
    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await drain_and_wait()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    return FFmpegResult(
        returncode=process.returncode,
        timed_out=timed_out,
        stderr_tail="\n".join(stderr_lines),
        elapsed_seconds=loop.time() - start_time,
    )


def validate_hls_playlist(playlist_path: Path, check_segments: bool = True) -> Tuple[bool, Optional[str]]:
    """
    Validate an HLS media playlist is complete and well-formed.

    Args:
        playlist_path: Path to the .m3u8 playlist file
        check_segments: If True, also verify all referenced segments exist and are non-empty

    Returns:
        Tuple[bool, Optional[str]]: (is_valid, error_message)
    """
    if not playlist_path.exists():
        return False, "Playlist file does not exist"

    try:
        content = playlist_path.read_text()
    except (IOError, OSError) as e:
        return False, f"Error reading playlist: {e}"

    if not content.startswith("#EXTM3U"):
        return False, "Missing #EXTM3U header"

    # Written by ffmpeg only once the encode finished
    if "#EXT-X-ENDLIST" not in content:
        return False, "Missing #EXT-X-ENDLIST (incomplete transcode)"

    if not check_segments:
        return True, None

    segment_count = 0
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        segment_path = playlist_path.parent / line
        if not segment_path.exists():
            return False, f"Missing segment file: {line}"
        if segment_path.stat().st_size == 0:
            return False, f"Empty segment file: {line}"
        segment_count += 1

    if segment_count == 0:
        return False, "Playlist contains no segment references"

    return True, None


@dataclass
class EncodedRendition:
    rendition: Rendition
    output_dir: Path
    playlist_path: Path
    elapsed_seconds: float = 0.0


class Encoder:
    """Encodes renditions of a source into HLS under a work directory."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        segment_duration: int = HLS_SEGMENT_DURATION,
        preset: str = X264_PRESET,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.segment_duration = segment_duration
        self.preset = preset

    def timeout_for(self, rendition: Rendition, duration: float) -> float:
        timeout = calculate_ffmpeg_timeout(duration, rendition.height)
        if rendition.passthrough:
            # Remux is roughly 3x faster than an encode
            timeout = max(FFMPEG_TIMEOUT_MINIMUM, timeout / 3)
        return timeout

    async def encode(
        self,
        input_path: Path,
        rendition: Rendition,
        work_dir: Path,
        duration: float,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> EncodedRendition:
        """
        Encode one rendition.

        Raises:
            EncodeError: non-zero exit, timeout, or an incomplete playlist
        """
        output_dir = Path(work_dir) / rendition.name
        output_dir.mkdir(parents=True, exist_ok=True)

        cmd = build_ffmpeg_command(
            Path(input_path),
            rendition,
            output_dir,
            ffmpeg_path=self.ffmpeg_path,
            segment_duration=self.segment_duration,
            preset=self.preset,
        )
        timeout = self.timeout_for(rendition, duration)
        logger.info(f"Encoding {rendition.name} (timeout {timeout:.0f}s)")

        async def on_progress(percent: int):
            if progress_callback:
                await progress_callback(rendition, percent)

        try:
            result = await run_ffmpeg_with_progress(
                cmd,
                duration=duration,
                timeout=timeout,
                progress_callback=on_progress,
                context=f"FFmpeg {rendition.name}",
            )
        except OSError as e:
            raise EncodeError(rendition.name, f"could not start ffmpeg: {e}") from e

        if result.timed_out:
            raise EncodeError(
                rendition.name,
                f"ffmpeg timed out after {result.elapsed_seconds:.0f}s (limit {timeout:.0f}s)",
                exit_code=result.returncode,
                stderr_tail=result.stderr_tail,
            )
        if result.returncode != 0:
            raise EncodeError(
                rendition.name,
                f"ffmpeg exited with code {result.returncode}",
                exit_code=result.returncode,
                stderr_tail=result.stderr_tail,
            )

        playlist_path = output_dir / PLAYLIST_NAME
        valid, error = validate_hls_playlist(playlist_path)
        if not valid:
            raise EncodeError(
                rendition.name,
                f"incomplete output: {error}",
                exit_code=result.returncode,
                stderr_tail=result.stderr_tail,
            )

        metrics.RENDITION_ENCODE_SECONDS.labels(rendition=rendition.name).observe(result.elapsed_seconds)
        return EncodedRendition(
            rendition=rendition,
            output_dir=output_dir,
            playlist_path=playlist_path,
            elapsed_seconds=result.elapsed_seconds,
        )

    async def encode_all(
        self,
        input_path: Path,
        renditions: Sequence[Rendition],
        work_dir: Path,
        duration: float,
        before_each: Optional[BeforeRenditionHook] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[EncodedRendition]:
        """
        Encode renditions one after another. The first failure propagates.

        ``before_each(rendition, index, total)`` runs before every encode and
        may raise to stop the sequence.
        """
        encoded = []
        total = len(renditions)
        for index, rendition in enumerate(renditions, start=1):
            if before_each:
                await before_each(rendition, index, total)
            started = time.monotonic()
            encoded.append(
                await self.encode(input_path, rendition, work_dir, duration, progress_callback=progress_callback)
            )
            logger.info(f"Encoded {rendition.name} in {time.monotonic() - started:.1f}s")
        return encoded
