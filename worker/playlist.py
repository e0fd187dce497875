"""
Master playlist composition.

Variants are listed by descending bandwidth so players that take the first
entry start at the best quality.
"""

import os
import tempfile
from pathlib import Path
from typing import Iterable, List

from worker.encoder import PLAYLIST_NAME
from worker.planner import Rendition

MASTER_PLAYLIST_NAME = "master.m3u8"


def order_for_playlist(renditions: Iterable[Rendition]) -> List[Rendition]:
    """Descending bandwidth; ties go to the larger height, then by name."""
    return sorted(renditions, key=lambda r: (-r.bandwidth, -r.height, r.name))


def compose_master_playlist(renditions: Iterable[Rendition]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for rendition in order_for_playlist(renditions):
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},RESOLUTION={rendition.width}x{rendition.height}"
        )
        lines.append(f"{rendition.name}/{PLAYLIST_NAME}")
    return "\n".join(lines) + "\n"


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a temp file in the same directory, then rename over ``path``."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_master_playlist(output_dir: Path, renditions: Iterable[Rendition]) -> Path:
    """Write ``master.m3u8`` into ``output_dir`` and return its path."""
    path = Path(output_dir) / MASTER_PLAYLIST_NAME
    atomic_write_text(path, compose_master_playlist(renditions))
    return path
