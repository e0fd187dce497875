"""
Rendition planning: choose which ladder rungs to produce for a source.

Never upscales. A pass-through "original" rendition is added when the job
asks to keep the original and its height is not already a ladder rung.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from config import EXTENDED_RENDITION_LADDER, RENDITION_LADDER
from core.errors import UnsupportedResolutionError
from core.job_store import PresetInfo

ORIGINAL_RENDITION_NAME = "original"

# Used for the pass-through rendition when the source bitrate is unknown
DEFAULT_ORIGINAL_BITRATE = 10_000_000


@dataclass(frozen=True)
class Rendition:
    name: str
    width: int
    height: int
    video_bitrate: int  # bits per second
    audio_bitrate: int  # bits per second
    passthrough: bool = False

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master playlist."""
        return self.video_bitrate + self.audio_bitrate

    @classmethod
    def from_dict(cls, data: dict) -> "Rendition":
        return cls(
            name=data["name"],
            width=int(data["width"]),
            height=int(data["height"]),
            video_bitrate=int(data["video_bitrate"]),
            audio_bitrate=int(data["audio_bitrate"]),
        )


DEFAULT_LADDER: List[Rendition] = [Rendition.from_dict(r) for r in RENDITION_LADDER]
EXTENDED_LADDER: List[Rendition] = [Rendition.from_dict(r) for r in EXTENDED_RENDITION_LADDER]


def ladder_for(preferences: PresetInfo) -> List[Rendition]:
    """The rungs a job may use, sorted by ascending height."""
    rungs = list(DEFAULT_LADDER)
    if not preferences.prefer_downscale_to_1080:
        rungs.extend(EXTENDED_LADDER)
    return sorted(rungs, key=lambda r: r.height)


def _even(value: int) -> int:
    # H.264 with yuv420p needs even dimensions
    return value - (value % 2)


def plan(
    source_height: int,
    preferences: Optional[PresetInfo] = None,
    source_width: Optional[int] = None,
    source_bitrate: Optional[int] = None,
    ladder: Optional[Sequence[Rendition]] = None,
) -> List[Rendition]:
    """
    Select renditions for a source of the given height.

    Args:
        source_height: Source video height in pixels
        preferences: Job preferences; defaults apply when omitted
        source_width: Source width, used for the pass-through rendition
        source_bitrate: Source bitrate (bps), advertised for the pass-through rendition
        ladder: Override the configured ladder

    Returns:
        Renditions in processing order (ascending height)

    Raises:
        UnsupportedResolutionError: if the source is below the lowest rung
    """
    preferences = preferences or PresetInfo()
    rungs = sorted(ladder, key=lambda r: r.height) if ladder is not None else ladder_for(preferences)

    selected = [r for r in rungs if r.height <= source_height]
    if not selected:
        raise UnsupportedResolutionError(source_height, rungs[0].height if rungs else 0)

    if preferences.keep_original and all(r.height != source_height for r in rungs):
        selected.append(
            Rendition(
                name=ORIGINAL_RENDITION_NAME,
                width=source_width or _even(round(source_height * 16 / 9)),
                height=source_height,
                video_bitrate=source_bitrate or DEFAULT_ORIGINAL_BITRATE,
                audio_bitrate=0,
                passthrough=True,
            )
        )

    return selected
