"""FFmpeg HLS encoding.

Runs one FFmpeg process per rendition and turns its lifecycle (start,
progress on stderr, exit status) into a single awaitable that either returns
the playlist path or raises :class:`EncoderError`.
"""

import asyncio
import logging
import re
import shlex
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from hlspipe.modules.registry.schemas import VideoResolution

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")

STDERR_TAIL_LINES = 30


@dataclass
class HLSEncodeConfig:
    """Configuration for one rendition encode."""
    input_path: str
    output_dir: str
    resolution: VideoResolution
    preset: str = "veryfast"
    segment_seconds: int = 10
    playlist_name: str = "index.m3u8"
    video_codec: str = "libx264"
    audio_codec: str = "aac"

    @property
    def playlist_path(self) -> str:
        return str(Path(self.output_dir) / self.playlist_name)

    @property
    def segment_pattern(self) -> str:
        return str(Path(self.output_dir) / "segment_%03d.ts")


@dataclass
class EncodeProgress:
    """Progress snapshot parsed from FFmpeg's stderr."""
    percent: float
    position_seconds: float
    duration_seconds: float


class EncoderError(Exception):
    """The encoder failed to start, exited non-zero, or timed out."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        self.message = message
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)


def parse_timestamp(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class ProgressParser:
    """Turns FFmpeg stderr lines into :class:`EncodeProgress` values."""

    def __init__(self):
        self.duration: Optional[float] = None

    def feed(self, line: str) -> Optional[EncodeProgress]:
        if self.duration is None:
            match = DURATION_RE.search(line)
            if match:
                self.duration = parse_timestamp(*match.groups())
                return None

        match = TIME_RE.search(line)
        if not match or not self.duration:
            return None

        position = parse_timestamp(*match.groups())
        percent = min(100.0, position / self.duration * 100.0)
        return EncodeProgress(
            percent=percent,
            position_seconds=position,
            duration_seconds=self.duration,
        )


class FFmpegTranscoder:
    """FFmpeg-based segmented (HLS) encoder."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: Optional[float] = None):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            timeout: Kill an encode that runs longer than this many seconds
        """
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def build_hls_command(self, config: HLSEncodeConfig) -> list[str]:
        """Build the FFmpeg command for one HLS rendition."""
        resolution = config.resolution
        return [
            self.ffmpeg_path,
            "-y",
            "-i", config.input_path,
            "-c:v", config.video_codec,
            "-c:a", config.audio_codec,
            "-s", resolution.dimensions,
            "-preset", config.preset,
            "-b:v", f"{resolution.bitrate}k",
            "-r", f"{resolution.fps:g}",
            "-hls_time", str(config.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", config.segment_pattern,
            "-f", "hls",
            config.playlist_path,
        ]

    async def transcode_hls(
        self,
        config: HLSEncodeConfig,
        on_start: Optional[Callable[[str], Awaitable[None]]] = None,
        on_progress: Optional[Callable[[EncodeProgress], None]] = None,
    ) -> str:
        """Encode one rendition into a segmented playlist.

        Args:
            config: Rendition configuration
            on_start: Awaited once the process is running, with the literal
                command line
            on_progress: Optional observer for progress snapshots

        Returns:
            Path of the written playlist

        Raises:
            EncoderError: If FFmpeg cannot start, fails, or times out
        """
        cmd = self.build_hls_command(config)
        command_line = shlex.join(cmd)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderError(f"Could not start ffmpeg: {e}") from e

        if on_start is not None:
            await on_start(command_line)

        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        try:
            returncode = await asyncio.wait_for(
                self._watch(process, tail, on_progress),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                # exited between the timeout and the kill
                pass
            await process.wait()
            raise EncoderError(
                f"ffmpeg timed out after {self.timeout:g}s",
                stderr="\n".join(tail),
            )

        if returncode != 0:
            last_line = tail[-1] if tail else "no diagnostic output"
            raise EncoderError(
                f"ffmpeg exited with code {returncode}: {last_line}",
                stderr="\n".join(tail),
                returncode=returncode,
            )

        return config.playlist_path

    async def _watch(
        self,
        process: asyncio.subprocess.Process,
        tail: deque,
        on_progress: Optional[Callable[[EncodeProgress], None]],
    ) -> int:
        parser = ProgressParser()
        async for line in iter_lines(process.stderr):
            tail.append(line)
            progress = parser.feed(line)
            if progress is not None and on_progress is not None:
                on_progress(progress)
        return await process.wait()


async def iter_lines(stream: Optional[asyncio.StreamReader], chunk_size: int = 4096) -> AsyncIterator[str]:
    """Yield non-empty lines, splitting on both ``\\n`` and ``\\r``.

    FFmpeg rewrites its progress line in place with carriage returns, so
    ``readline()`` alone would buffer the whole encode.
    """
    if stream is None:
        return
    buffer = ""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        buffer += chunk.decode("utf-8", errors="replace")
        *lines, buffer = re.split(r"[\r\n]", buffer)
        for line in lines:
            if line.strip():
                yield line.strip()
    if buffer.strip():
        yield buffer.strip()
