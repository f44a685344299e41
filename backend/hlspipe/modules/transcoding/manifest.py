"""HLS master playlist assembly."""

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

from hlspipe.modules.registry.schemas import VideoResolution

MASTER_PLAYLIST_NAME = "master.m3u8"
FORMAT_MARKER = "#EXTM3U"


@dataclass(frozen=True)
class VariantPlaylist:
    """A finished rendition: its resolution and playlist path relative to
    the master playlist."""
    resolution: VideoResolution
    path: str

    @property
    def bandwidth(self) -> int:
        return self.resolution.bandwidth


def stream_inf_line(variant: VariantPlaylist) -> str:
    return (
        f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},"
        f"RESOLUTION={variant.resolution.dimensions}"
    )


def build_master_playlist(variants: Sequence[VariantPlaylist]) -> str:
    """Render the master playlist, one stream entry per variant, in order."""
    lines = [FORMAT_MARKER]
    for variant in variants:
        lines.append(stream_inf_line(variant))
        lines.append(variant.path)
    return "\n".join(lines) + "\n"


def write_master_playlist(
    output_dir: Union[str, Path],
    variants: Sequence[VariantPlaylist],
    filename: str = MASTER_PLAYLIST_NAME,
) -> Path:
    """Write the master playlist atomically.

    The content goes to a temporary file in the same directory first and is
    renamed into place, so readers never observe a half-written manifest.
    """
    output_dir = Path(output_dir)
    target = output_dir / filename
    content = build_master_playlist(variants)

    fd, tmp_path = tempfile.mkstemp(dir=output_dir, prefix=f".{filename}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    return target
