"""Shared fakes for pipeline tests.

The fakes mirror the public surface of the real collaborators closely
enough for the scheduler, consumer and orchestrator to run unmodified.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import pytest

from hlspipe.modules.queue.transport import QueueNotInitializedError, QueueOperationError
from hlspipe.modules.registry.client import RegistryAPIError
from hlspipe.modules.registry.schemas import PendingTask, TaskStatus
from hlspipe.modules.transcoding.ffmpeg import EncoderError, HLSEncodeConfig


class FakeMessage:
    """Stand-in for ``kombu.message.Message``."""

    def __init__(self, body):
        self.body = body
        self.state = "RECEIVED"
        self.requeue: Optional[bool] = None

    def ack(self) -> None:
        self.state = "ACK"

    def reject(self, requeue: bool = False) -> None:
        self.state = "REJECTED"
        self.requeue = requeue


class FakeTransport:
    """In-memory queue with the :class:`QueueTransport` interface."""

    def __init__(self, connected: bool = True, depth: int = 0, fail_publish_for: Optional[set] = None):
        self.connected = connected
        self.extra_depth = depth
        self.queues: dict[str, list[FakeMessage]] = {}
        self.published: list[tuple[str, str, bool, bool]] = []
        self.depth_calls = 0
        self.fail_publish_for = fail_publish_for or set()
        self._on_message: Optional[Callable] = None
        self._consume_queue: Optional[str] = None
        self.prefetch: Optional[int] = None
        self.in_flight: list[FakeMessage] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    def _check(self) -> None:
        if not self.connected:
            raise QueueNotInitializedError("Queue channel not initialized")

    def publish(self, queue_name, payload, durable=True, persistent=True) -> None:
        self._check()
        for marker in self.fail_publish_for:
            if marker in payload:
                raise QueueOperationError(f"broker refused message containing {marker}")
        self.published.append((queue_name, payload, durable, persistent))
        self.queues.setdefault(queue_name, []).append(FakeMessage(payload.encode("utf-8")))

    def depth(self, queue_name) -> int:
        self._check()
        self.depth_calls += 1
        return self.extra_depth + len(self.queues.get(queue_name, []))

    def consume(self, queue_name, on_message, prefetch=1) -> None:
        self._check()
        self._on_message = on_message
        self._consume_queue = queue_name
        self.prefetch = prefetch

    def drain_events(self, timeout: float = 1.0) -> bool:
        self._check()
        pending = self.queues.get(self._consume_queue, [])
        # prefetch: nothing new is delivered while a message is unsettled
        if self._on_message is None or not pending or len(self.in_flight) >= (self.prefetch or 1):
            return False
        message = pending.pop(0)
        self.in_flight.append(message)
        self._on_message(message)
        return True

    def ack(self, message) -> None:
        self._check()
        message.ack()
        self.in_flight.remove(message)

    def reject(self, message, requeue: bool = False) -> None:
        self._check()
        message.reject(requeue=requeue)
        self.in_flight.remove(message)
        if requeue:
            self.queues.setdefault(self._consume_queue, []).insert(0, message)


class FakeRegistry:
    """Records every registry call; serves the tasks still ``Pending``.

    Successful status updates are applied to the served task dicts, so a
    task marked ``Queued`` drops out of later listings as it does in the
    real registry.
    """

    def __init__(self, tasks: Optional[list[dict]] = None, fail_fetch: bool = False, fail_updates: bool = False):
        self.tasks = tasks or []
        self.fail_fetch = fail_fetch
        self.fail_updates = fail_updates
        self.fetch_calls: list[int] = []
        self.updates: list[dict] = []
        self.status_updates: list[dict] = []
        self.videos: list[dict] = []
        self.history: list[tuple[int, TaskStatus]] = []

    def _apply(self, task_id, status) -> None:
        self.history.append((task_id, status))
        if self.fail_updates:
            return
        for task in self.tasks:
            if task.get("id") == task_id:
                task["status"] = TaskStatus(status).value

    async def fetch_pending_tasks(self, limit: int) -> list[PendingTask]:
        self.fetch_calls.append(limit)
        if self.fail_fetch:
            raise RegistryAPIError("pendingList failed: 502", status_code=502)
        pending = [t for t in self.tasks if t.get("status", TaskStatus.PENDING.value) == TaskStatus.PENDING.value]
        return [PendingTask.model_validate(t) for t in pending[:limit]]

    async def update_task(self, task_id, status, *, start_time=None, end_time=None, error_message=None) -> None:
        self.updates.append({
            "task_id": task_id,
            "status": status,
            "start_time": start_time,
            "end_time": end_time,
            "error_message": error_message,
        })
        self._apply(task_id, status)
        if self.fail_updates:
            raise RegistryAPIError("update failed: 500", status_code=500)

    async def update_status(self, task_id, status, error_message=None) -> None:
        self.status_updates.append({"task_id": task_id, "status": status, "error_message": error_message})
        self._apply(task_id, status)
        if self.fail_updates:
            raise RegistryAPIError("updateStatus failed: 500", status_code=500)

    async def create_video(self, task_id, video_url) -> None:
        self.videos.append({"queued_task_id": task_id, "video_url": video_url})
        if self.fail_updates:
            raise RegistryAPIError("videos/create failed: 500", status_code=500)

    def final_status(self, task_id) -> Optional[TaskStatus]:
        statuses = [status for tid, status in self.history if tid == task_id]
        return statuses[-1] if statuses else None


@dataclass
class FakeTranscoder:
    """Writes a tiny playlist per rendition instead of running FFmpeg.

    Renditions whose height is in ``fail_heights`` fail with an
    :class:`EncoderError`.
    """
    fail_heights: set = field(default_factory=set)
    delay: float = 0.0
    started: list[str] = field(default_factory=list)
    running: int = 0
    max_running: int = 0

    async def transcode_hls(self, config: HLSEncodeConfig, on_start=None, on_progress=None) -> str:
        label = config.resolution.label
        self.started.append(label)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if on_start is not None:
                await on_start(f"ffmpeg -i {config.input_path} {config.playlist_path}")
            await asyncio.sleep(self.delay)
            if config.resolution.height in self.fail_heights:
                raise EncoderError(
                    f"ffmpeg exited with code 1: {label} encoder blew up",
                    stderr=f"{label} encoder blew up",
                    returncode=1,
                )
            Path(config.playlist_path).write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
            return config.playlist_path
        finally:
            self.running -= 1


def make_task(task_id: int, heights=(360, 720), title: str = "clip", path: Optional[str] = None) -> dict:
    """Registry-shaped pending task."""
    widths = {240: 426, 360: 640, 480: 854, 720: 1280, 1080: 1920}
    bitrates = {240: 400, 360: 800, 480: 1400, 720: 2800, 1080: 5000}
    return {
        "id": task_id,
        "status": "Pending",
        "videoUpload": {
            "id": task_id * 10,
            "title": title,
            "path": path or f"{title}-{task_id}.mp4",
            "resolution": [
                {"width": widths[h], "height": h, "bitrate": bitrates[h], "fps": 30}
                for h in heights
            ],
        },
    }


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()
