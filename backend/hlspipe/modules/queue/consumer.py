"""Job consumer: one transcode job in flight per consumer.

The broker delivers at most one unacknowledged message (prefetch = 1), so
the next job is not fetched until the current one is acknowledged or
rejected. Failed jobs are rejected without requeue: a transcode attempt has
side effects (files, status reports) that are not assumed idempotent, and
the task's ``Error`` status in the registry is the recorded outcome.
"""

import asyncio
import logging
import queue
import threading
import time
from typing import Optional

from kombu.message import Message
from pydantic import ValidationError

from hlspipe.core.logging import correlation_scope, log_error
from hlspipe.core.metrics import JOB_DURATION_SECONDS, JOBS_PROCESSED_TOTAL
from hlspipe.core.tracing import create_span, record_exception
from hlspipe.modules.queue.schemas import JobMessage
from hlspipe.modules.queue.transport import QueueTransport, QueueTransportError
from hlspipe.modules.transcoding.service import TranscodeJobError, TranscodingOrchestrator

logger = logging.getLogger(__name__)


class JobConsumer:
    """Consumes job messages and hands them to the orchestrator."""

    PREFETCH = 1

    def __init__(
        self,
        transport: QueueTransport,
        queue_name: str,
        orchestrator: TranscodingOrchestrator,
        poll_timeout: float = 1.0,
    ):
        self.transport = transport
        self.queue_name = queue_name
        self.orchestrator = orchestrator
        self.poll_timeout = poll_timeout
        # Deliveries arrive on whichever thread drains the channel; they are
        # handled on the consumer thread only.
        self._deliveries: "queue.Queue[Message]" = queue.Queue()
        self._started = False
        self.last_activity: Optional[float] = None

    def start(self) -> None:
        """Subscribe to the work queue.

        Raises:
            QueueTransportError: If the transport is not connected
        """
        self.transport.consume(self.queue_name, self._deliveries.put, prefetch=self.PREFETCH)
        self._started = True

    def poll_once(self) -> bool:
        """Handle one delivery if one is available.

        Returns:
            True if a delivery was handled
        """
        message = self._next_delivery()
        if message is None:
            self.transport.drain_events(timeout=self.poll_timeout)
            message = self._next_delivery()
        self.last_activity = time.monotonic()
        if message is None:
            return False
        self.handle_delivery(message)
        return True

    def _next_delivery(self) -> Optional[Message]:
        try:
            return self._deliveries.get_nowait()
        except queue.Empty:
            return None

    def run_forever(self, stop_event: threading.Event) -> None:
        """Consume until ``stop_event`` is set."""
        if not self._started:
            self.start()
        logger.info("Job consumer started", extra={"queue_name": self.queue_name})
        while not stop_event.is_set():
            try:
                self.poll_once()
            except QueueTransportError as e:
                log_error(logger, "Queue transport error in consumer loop", e)
                stop_event.wait(self.poll_timeout)
        logger.info("Job consumer stopped")

    def handle_delivery(self, message: Message) -> bool:
        """Process one delivery and settle it.

        Returns:
            True if the message was acknowledged, False if rejected
        """
        try:
            job = JobMessage.from_json(message.body)
        except ValidationError as e:
            JOBS_PROCESSED_TOTAL.labels(outcome="malformed").inc()
            log_error(logger, "Rejecting malformed job message", e, body=_preview(message.body))
            self._settle(message, success=False)
            return False

        with correlation_scope(f"task-{job.queued_task_id}"), create_span(
            "transcode_job",
            attributes={
                "task.id": job.queued_task_id,
                "job.resolutions": len(job.resolutions),
            },
        ):
            logger.info(
                "Transcoding job received",
                extra={"task_id": job.queued_task_id, "input_path": job.input_path},
            )
            started = time.monotonic()
            try:
                result = asyncio.run(self.orchestrator.process(job))
            except TranscodeJobError as e:
                record_exception(e)
                JOBS_PROCESSED_TOTAL.labels(outcome="failed").inc()
                log_error(logger, f"Transcoding failed for task {job.queued_task_id}", e)
                self._settle(message, success=False)
                return False
            except Exception as e:
                # Anything unexpected still only costs this one delivery.
                record_exception(e)
                JOBS_PROCESSED_TOTAL.labels(outcome="crashed").inc()
                log_error(logger, f"Unexpected error while transcoding task {job.queued_task_id}", e)
                self._settle(message, success=False)
                self._report_crash(job, e)
                return False
            finally:
                JOB_DURATION_SECONDS.observe(time.monotonic() - started)

            JOBS_PROCESSED_TOTAL.labels(outcome="completed").inc()
            logger.info(
                "Transcoding job completed",
                extra={"task_id": job.queued_task_id, "manifest_path": str(result.manifest_path)},
            )
            self._settle(message, success=True)
            return True

    def _report_crash(self, job: JobMessage, error: Exception) -> None:
        asyncio.run(self.orchestrator.reporter.failed(job.queued_task_id, f"Unexpected error: {error}"))

    def _settle(self, message: Message, success: bool) -> None:
        try:
            if success:
                self.transport.ack(message)
            else:
                self.transport.reject(message, requeue=False)
        except QueueTransportError as e:
            log_error(logger, "Failed to settle delivery", e, acknowledged=success)


def _preview(body, limit: int = 200) -> str:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return str(body)[:limit]
