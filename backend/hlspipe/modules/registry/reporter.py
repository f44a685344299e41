"""Best-effort status reporting to the task registry.

Reporting is not transactionally linked to the work it describes: a failed
report is logged and counted, and never changes the outcome of an encode or
a publish.
"""

import logging
from typing import Optional

from hlspipe.core.logging import log_error
from hlspipe.core.metrics import REGISTRY_REPORT_FAILURES_TOTAL
from hlspipe.modules.registry.client import RegistryAPIError, TaskRegistryClient, utcnow
from hlspipe.modules.registry.schemas import TaskStatus

logger = logging.getLogger(__name__)


class StatusReporter:
    """Wraps a :class:`TaskRegistryClient` and swallows reporting failures."""

    def __init__(self, client: TaskRegistryClient):
        self.client = client

    async def _report(self, operation: str, task_id: int, coro) -> bool:
        try:
            await coro
        except RegistryAPIError as e:
            REGISTRY_REPORT_FAILURES_TOTAL.labels(operation=operation).inc()
            log_error(
                logger,
                f"Registry report '{operation}' failed for task {task_id}",
                e,
                task_id=task_id,
                status_code=e.status_code,
            )
            return False
        return True

    async def processing(self, task_id: int) -> bool:
        return await self._report(
            "processing",
            task_id,
            self.client.update_task(task_id, TaskStatus.PROCESSING, start_time=utcnow()),
        )

    async def failed(self, task_id: int, error_message: str) -> bool:
        return await self._report(
            "error",
            task_id,
            self.client.update_task(
                task_id,
                TaskStatus.ERROR,
                end_time=utcnow(),
                error_message=error_message,
            ),
        )

    async def completed(self, task_id: int, video_url: str) -> bool:
        """Create the video record, then mark the task completed.

        The status update is still attempted when video creation fails.
        """
        created = await self._report(
            "create_video",
            task_id,
            self.client.create_video(task_id, video_url),
        )
        updated = await self._report(
            "completed",
            task_id,
            self.client.update_task(task_id, TaskStatus.COMPLETED, end_time=utcnow()),
        )
        return created and updated

    async def queued(self, task_id: int) -> bool:
        """Take a task about to be published out of the pending listing."""
        return await self._report(
            "queued",
            task_id,
            self.client.update_status(task_id, TaskStatus.QUEUED),
        )

    async def rejected(self, task_id: int, error_message: Optional[str]) -> bool:
        """Mark a task errored before it ever reached the queue."""
        return await self._report(
            "reject",
            task_id,
            self.client.update_status(task_id, TaskStatus.ERROR, error_message=error_message),
        )
