"""Process wiring: one transport, one consumer thread, one scheduler thread.

The scheduler and the consumer only meet through the queue. They can run in
the same process (both enabled) or in separate processes by disabling one
side via ``SCHEDULER_ENABLED`` / ``CONSUMER_ENABLED``.
"""

import asyncio
import logging
import threading
import time
from typing import Optional

from hlspipe.core.config import Settings, settings as default_settings
from hlspipe.modules.queue.consumer import JobConsumer
from hlspipe.modules.queue.transport import QueueTransport
from hlspipe.modules.registry.client import TaskRegistryClient
from hlspipe.modules.registry.reporter import StatusReporter
from hlspipe.modules.scheduler.service import PendingTaskScheduler
from hlspipe.modules.transcoding.ffmpeg import FFmpegTranscoder
from hlspipe.modules.transcoding.service import TranscodingOrchestrator

logger = logging.getLogger(__name__)


class PipelineRunner:
    """Builds the pipeline from settings and runs its loops on threads."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[QueueTransport] = None,
        registry: Optional[TaskRegistryClient] = None,
        transcoder: Optional[FFmpegTranscoder] = None,
    ):
        self.config = config or default_settings
        self.transport = transport or QueueTransport(
            self.config.QUEUE_URL,
            heartbeat=self.config.QUEUE_HEARTBEAT_SECONDS,
        )
        self.registry = registry or TaskRegistryClient(
            base_url=self.config.REGISTRY_BASE_URL,
            timeout=self.config.REGISTRY_TIMEOUT_SECONDS,
        )
        transcoder = transcoder or FFmpegTranscoder(
            ffmpeg_path=self.config.FFMPEG_PATH,
            timeout=self.config.ENCODER_TIMEOUT_SECONDS,
        )

        self.orchestrator = TranscodingOrchestrator(
            transcoder=transcoder,
            reporter=StatusReporter(self.registry),
            upload_dir=self.config.UPLOAD_DIR,
            output_dir=self.config.OUTPUT_DIR,
            preset=self.config.ENCODER_PRESET,
            segment_seconds=self.config.HLS_SEGMENT_SECONDS,
        )
        self.consumer = JobConsumer(
            transport=self.transport,
            queue_name=self.config.QUEUE_NAME,
            orchestrator=self.orchestrator,
            poll_timeout=self.config.CONSUMER_POLL_TIMEOUT_SECONDS,
        )
        self.scheduler = PendingTaskScheduler(
            transport=self.transport,
            registry=self.registry,
            queue_name=self.config.QUEUE_NAME,
            max_queue_capacity=self.config.MAX_QUEUE_CAPACITY,
            interval_seconds=self.config.SCHEDULER_INTERVAL_SECONDS,
            path_prefix=self.config.TRANSCODED_PATH_PREFIX,
        )

        self._stop_event = threading.Event()
        self._threads: dict[str, threading.Thread] = {}

    def start(self) -> None:
        """Connect and start the enabled loops.

        Raises:
            QueueConnectionError: If the broker is unreachable
            RegistryUnavailableError: If the startup registry check fails
        """
        self.transport.connect()

        if self.config.REGISTRY_STARTUP_CHECK:
            try:
                asyncio.run(self.registry.check_reachable())
            except Exception:
                self.transport.close()
                raise

        if self.config.CONSUMER_ENABLED:
            try:
                self.consumer.start()
            except Exception:
                self.transport.close()
                raise
            self._spawn("job-consumer", self.consumer.run_forever)
        if self.config.SCHEDULER_ENABLED:
            self._spawn("pending-task-scheduler", self.scheduler.run_forever)

        logger.info(
            "Pipeline started",
            extra={
                "queue_name": self.config.QUEUE_NAME,
                "consumer_enabled": self.config.CONSUMER_ENABLED,
                "scheduler_enabled": self.config.SCHEDULER_ENABLED,
            },
        )

    def _spawn(self, name: str, target) -> None:
        thread = threading.Thread(target=target, args=(self._stop_event,), name=name, daemon=True)
        thread.start()
        self._threads[name] = thread

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Signal both loops, wait for them, then close the transport.

        A job that is mid-encode is not interrupted; if it outlives
        ``timeout`` its delivery stays unacknowledged and the broker
        redelivers it once the connection is gone.
        """
        self._stop_event.set()
        for name, thread in self._threads.items():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Thread %s did not stop within %ss", name, timeout)
        self._threads.clear()
        self.transport.close()
        logger.info("Pipeline stopped")

    def wait(self) -> None:
        """Block until :meth:`stop` is called from another thread or a signal handler."""
        self._stop_event.wait()

    def health(self) -> dict:
        threads = {name: thread.is_alive() for name, thread in self._threads.items()}
        healthy = self.transport.is_connected and all(threads.values())
        last_activity = self.consumer.last_activity
        last_cycle = self.scheduler.last_cycle
        return {
            "status": "healthy" if healthy else "unhealthy",
            "queue_connected": self.transport.is_connected,
            "threads": threads,
            "consumer_idle_seconds": None if last_activity is None else round(time.monotonic() - last_activity, 3),
            "last_cycle": None if last_cycle is None else {
                "available": last_cycle.available,
                "fetched": last_cycle.fetched,
                "published": len(last_cycle.published),
                "failed": len(last_cycle.failed),
                "skipped_reason": last_cycle.skipped_reason,
            },
        }
