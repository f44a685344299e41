"""Transcoding orchestrator.

Fans one job out into concurrent per-resolution encodes, joins them with an
all-must-succeed barrier, writes the master playlist, and reports the task's
status transitions to the registry.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from hlspipe.core.config import settings
from hlspipe.core.logging import log_error
from hlspipe.core.metrics import VARIANT_DURATION_SECONDS
from hlspipe.modules.queue.schemas import JobMessage
from hlspipe.modules.registry.reporter import StatusReporter
from hlspipe.modules.registry.schemas import VideoResolution
from hlspipe.modules.transcoding.ffmpeg import (
    EncodeProgress,
    EncoderError,
    FFmpegTranscoder,
    HLSEncodeConfig,
)
from hlspipe.modules.transcoding.manifest import VariantPlaylist, write_master_playlist

logger = logging.getLogger(__name__)


class TranscodeJobError(Exception):
    """A job failed; no master playlist was written for it."""

    def __init__(self, task_id: int, message: str, failures: Optional[list[BaseException]] = None):
        self.task_id = task_id
        self.message = message
        self.failures = failures or []
        super().__init__(message)


@dataclass
class TranscodeJobResult:
    """Outcome of a successful job."""
    task_id: int
    video_id: str
    output_dir: Path
    manifest_path: Path
    variants: list[VariantPlaylist] = field(default_factory=list)


@dataclass
class _JobState:
    task_id: int
    processing_report: Optional[asyncio.Future] = None
    failed: bool = False


class TranscodingOrchestrator:
    """Runs a :class:`JobMessage` to completion."""

    def __init__(
        self,
        transcoder: FFmpegTranscoder,
        reporter: StatusReporter,
        upload_dir: Union[str, Path, None] = None,
        output_dir: Union[str, Path, None] = None,
        preset: Optional[str] = None,
        segment_seconds: Optional[int] = None,
    ):
        self.transcoder = transcoder
        self.reporter = reporter
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)
        self.output_root = Path(output_dir or settings.OUTPUT_DIR)
        self.preset = preset or settings.ENCODER_PRESET
        self.segment_seconds = segment_seconds or settings.HLS_SEGMENT_SECONDS

    def resolve_input(self, input_path: str) -> Path:
        """Resolve a job's input path against the upload directory.

        Absolute paths are used as-is.
        """
        return (self.upload_dir / input_path).resolve()

    async def process(self, job: JobMessage) -> TranscodeJobResult:
        """Encode every requested resolution and write the master playlist.

        Every failure leaves the task in ``Error``.

        Raises:
            TranscodeJobError: If the output directory cannot be created or
                any rendition fails. Partial output is left on disk.
        """
        try:
            return await self._process(job)
        except TranscodeJobError:
            raise
        except Exception as e:
            log_error(logger, f"Unexpected error while transcoding task {job.queued_task_id}", e)
            await self.reporter.failed(job.queued_task_id, f"Unexpected error: {e}")
            raise TranscodeJobError(job.queued_task_id, f"Unexpected error while transcoding: {e}") from e

    async def _process(self, job: JobMessage) -> TranscodeJobResult:
        task_id = job.queued_task_id
        video_id = str(uuid.uuid4())
        output_dir = self.output_root / video_id
        try:
            output_dir.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            await self.reporter.failed(task_id, f"Could not create output directory: {e}")
            raise TranscodeJobError(task_id, f"Could not create output directory {output_dir}: {e}") from e

        input_path = self.resolve_input(job.input_path)
        state = _JobState(task_id=task_id)
        folders = variant_folder_names(job.resolutions)

        outcomes = await asyncio.gather(
            *(
                self._encode_variant(state, input_path, output_dir, folder, resolution)
                for folder, resolution in zip(folders, job.resolutions)
            ),
            return_exceptions=True,
        )

        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures:
            first = failures[0]
            raise TranscodeJobError(
                task_id,
                f"{len(failures)} of {len(outcomes)} renditions failed: {first}",
                failures=failures,
            ) from first

        variants: list[VariantPlaylist] = list(outcomes)
        try:
            manifest_path = write_master_playlist(output_dir, variants)
        except OSError as e:
            await self.reporter.failed(task_id, f"Could not write master playlist: {e}")
            raise TranscodeJobError(task_id, f"Could not write master playlist: {e}") from e

        logger.info(
            "Master playlist written",
            extra={"task_id": task_id, "manifest_path": str(manifest_path), "variant_count": len(variants)},
        )
        await self.reporter.completed(task_id, str(manifest_path))

        return TranscodeJobResult(
            task_id=task_id,
            video_id=video_id,
            output_dir=output_dir,
            manifest_path=manifest_path,
            variants=variants,
        )

    async def _encode_variant(
        self,
        state: _JobState,
        input_path: Path,
        output_dir: Path,
        folder: str,
        resolution: VideoResolution,
    ) -> VariantPlaylist:
        variant_dir = output_dir / folder
        config = HLSEncodeConfig(
            input_path=str(input_path),
            output_dir=str(variant_dir),
            resolution=resolution,
            preset=self.preset,
            segment_seconds=self.segment_seconds,
        )

        async def on_start(command_line: str) -> None:
            logger.info(
                f"FFmpeg started for {folder}: {command_line}",
                extra={"task_id": state.task_id, "resolution": folder},
            )
            if state.processing_report is None and not state.failed:
                state.processing_report = asyncio.ensure_future(self.reporter.processing(state.task_id))
                await state.processing_report

        last_decile = [-1]

        def on_progress(progress: EncodeProgress) -> None:
            decile = int(progress.percent // 10)
            if decile > last_decile[0]:
                last_decile[0] = decile
                logger.info(
                    f"{folder}: {progress.percent:.2f}%",
                    extra={"task_id": state.task_id, "resolution": folder},
                )

        started = time.monotonic()
        try:
            variant_dir.mkdir(parents=True, exist_ok=True)
            await self.transcoder.transcode_hls(config, on_start=on_start, on_progress=on_progress)
        except EncoderError as e:
            log_error(
                logger,
                f"FFmpeg error for {folder}",
                e,
                task_id=state.task_id,
                resolution=folder,
                stderr=e.stderr,
            )
            await self._report_failure(state, e.message)
            raise
        except Exception as e:
            log_error(logger, f"Encode of {folder} failed", e, task_id=state.task_id, resolution=folder)
            await self._report_failure(state, f"{folder}: {e}")
            raise

        VARIANT_DURATION_SECONDS.labels(resolution=folder).observe(time.monotonic() - started)
        logger.info(f"{folder} HLS stream complete", extra={"task_id": state.task_id})
        return VariantPlaylist(
            resolution=resolution,
            path=f"{folder}/{config.playlist_name}",
        )

    async def _report_failure(self, state: _JobState, error_message: str) -> None:
        state.failed = True
        # Error must land after an in-flight Processing report.
        if state.processing_report is not None:
            await state.processing_report
        await self.reporter.failed(state.task_id, error_message)


def variant_folder_names(resolutions: list[VideoResolution]) -> list[str]:
    """Folder name per rendition: ``<height>p``, or ``<width>x<height>``
    when two renditions share a height."""
    heights = [r.height for r in resolutions]
    names = []
    for resolution in resolutions:
        name = resolution.label if heights.count(resolution.height) == 1 else resolution.dimensions
        # identical renditions listed twice still need distinct folders
        candidate, suffix = name, 2
        while candidate in names:
            candidate = f"{name}_{suffix}"
            suffix += 1
        names.append(candidate)
    return names
