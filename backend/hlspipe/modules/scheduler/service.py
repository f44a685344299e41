"""Admission-controlled pending-task scheduler.

Every cycle reads the current queue depth, admits at most
``max_queue_capacity - depth`` pending tasks from the registry, and publishes
one job per admitted task. A full queue skips the cycle entirely, so the
registry is never polled for work that could not be queued. A published task
is marked ``Queued`` so later listings no longer return it.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional

from hlspipe.core.logging import correlation_scope, log_error
from hlspipe.core.metrics import (
    JOBS_PUBLISH_FAILURES_TOTAL,
    JOBS_PUBLISHED_TOTAL,
    QUEUE_AVAILABLE_SLOTS,
    QUEUE_DEPTH,
    SCHEDULER_CYCLES_TOTAL,
)
from hlspipe.core.tracing import create_span
from hlspipe.modules.queue.producer import TranscodeJobProducer
from hlspipe.modules.queue.schemas import build_job_message
from hlspipe.modules.queue.transport import QueueTransport, QueueTransportError
from hlspipe.modules.registry.client import RegistryAPIError, TaskRegistryClient
from hlspipe.modules.registry.reporter import StatusReporter
from hlspipe.modules.registry.schemas import PendingTask, TaskStatus

logger = logging.getLogger(__name__)

SKIP_QUEUE_FULL = "queue_full"
SKIP_CYCLE_IN_PROGRESS = "cycle_in_progress"
SKIP_ADMISSION_ERROR = "admission_error"


@dataclass
class CycleResult:
    """What one scheduler cycle did."""
    available: int = 0
    fetched: int = 0
    published: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    ignored: list[int] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


class PendingTaskScheduler:
    """Periodically moves pending registry tasks onto the work queue."""

    def __init__(
        self,
        transport: QueueTransport,
        registry: TaskRegistryClient,
        queue_name: str,
        max_queue_capacity: int,
        interval_seconds: float = 60.0,
        path_prefix: str = "transcoded",
    ):
        self.transport = transport
        self.registry = registry
        self.reporter = StatusReporter(registry)
        self.producer = TranscodeJobProducer(transport, queue_name)
        self.queue_name = queue_name
        self.max_queue_capacity = max_queue_capacity
        self.interval_seconds = interval_seconds
        self.path_prefix = path_prefix
        self._cycle_lock = threading.Lock()
        self.last_cycle: Optional[CycleResult] = None

    async def available_slots(self) -> int:
        """Admission budget: configured ceiling minus current queue depth."""
        depth = await asyncio.to_thread(self.transport.depth, self.queue_name)
        QUEUE_DEPTH.labels(queue_name=self.queue_name).set(depth)
        available = self.max_queue_capacity - depth
        QUEUE_AVAILABLE_SLOTS.labels(queue_name=self.queue_name).set(max(available, 0))
        logger.debug("Queue depth %s, available slots %s", depth, available)
        return available

    async def run_cycle(self) -> CycleResult:
        """Run one admission cycle.

        Never raises for admission or publish failures; they are logged and
        reflected in the returned :class:`CycleResult`. A cycle requested
        while another one is running is skipped.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous scheduler cycle still running, skipping this tick")
            SCHEDULER_CYCLES_TOTAL.labels(outcome="overlap_skipped").inc()
            return CycleResult(skipped_reason=SKIP_CYCLE_IN_PROGRESS)

        try:
            with correlation_scope(f"cycle-{uuid.uuid4().hex[:12]}"), create_span(
                "scheduler_cycle", attributes={"queue.name": self.queue_name}
            ):
                result = await self._run_cycle()
        finally:
            self._cycle_lock.release()

        self.last_cycle = result
        return result

    async def _run_cycle(self) -> CycleResult:
        result = CycleResult()
        try:
            result.available = await self.available_slots()
            if result.available <= 0:
                logger.info("Queue is full. Skipping this cycle.")
                SCHEDULER_CYCLES_TOTAL.labels(outcome="queue_full").inc()
                result.skipped_reason = SKIP_QUEUE_FULL
                return result

            tasks = await self.registry.fetch_pending_tasks(limit=result.available)
        except (QueueTransportError, RegistryAPIError) as e:
            log_error(logger, "Admission failed, retrying next cycle", e)
            SCHEDULER_CYCLES_TOTAL.labels(outcome="admission_error").inc()
            result.skipped_reason = SKIP_ADMISSION_ERROR
            return result

        result.fetched = len(tasks)
        if not tasks:
            logger.info("No pending tasks to process.")
            SCHEDULER_CYCLES_TOTAL.labels(outcome="idle").inc()
            return result

        for task in tasks:
            if task.status != TaskStatus.PENDING.value:
                logger.warning(
                    f"Task {task.id} is listed as pending but has status {task.status}, not publishing",
                    extra={"task_id": task.id},
                )
                result.ignored.append(task.id)
                continue
            error = await self.dispatch_task(task)
            if error is None:
                result.published.append(task.id)
            else:
                result.failed[task.id] = error

        SCHEDULER_CYCLES_TOTAL.labels(outcome="dispatched").inc()
        logger.info(
            "Scheduler cycle dispatched tasks",
            extra={
                "available": result.available,
                "published_count": len(result.published),
                "failed_count": len(result.failed),
            },
        )
        return result

    async def dispatch_task(self, task: PendingTask) -> Optional[str]:
        """Build the job for one task, mark the task ``Queued`` and publish.

        The task is marked before the message exists, so a consumer's later
        status reports always supersede it. Any failure stays with this task
        and is reported as ``Error``; the rest of the batch is unaffected.

        Returns:
            None on success, otherwise the diagnostic reported to the registry
        """
        try:
            job = build_job_message(task, path_prefix=self.path_prefix)
            await self.reporter.queued(task.id)
            await asyncio.to_thread(self.producer.send, job)
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            JOBS_PUBLISH_FAILURES_TOTAL.inc()
            log_error(logger, f"Error processing task {task.id}", e, task_id=task.id)
            await self.reporter.rejected(task.id, error_message)
            return error_message

        JOBS_PUBLISHED_TOTAL.inc()
        return None

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run cycles every ``interval_seconds`` until ``stop_event`` is set.

        The wait starts after a cycle returns, so cycles never overlap.
        """
        logger.info(
            "Pending task scheduler started",
            extra={"interval_seconds": self.interval_seconds, "max_queue_capacity": self.max_queue_capacity},
        )
        while not stop_event.wait(self.interval_seconds):
            try:
                asyncio.run(self.run_cycle())
            except Exception as e:
                # A broken cycle must not end the loop.
                log_error(logger, "Unexpected error in scheduler cycle", e)
                SCHEDULER_CYCLES_TOTAL.labels(outcome="crashed").inc()
        logger.info("Pending task scheduler stopped")
