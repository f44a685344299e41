"""Task registry API client.

The registry is the system of record for queued tasks: it lists pending
work and receives every status transition the pipeline produces.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from hlspipe.core.config import settings
from hlspipe.modules.registry.schemas import (
    PendingTask,
    TaskStatus,
    TaskStatusUpdate,
    TaskUpdate,
    VideoCreate,
)

logger = logging.getLogger(__name__)


class RegistryAPIError(Exception):
    """Exception raised when the registry answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[dict] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class RegistryUnavailableError(RegistryAPIError):
    """The registry could not be reached at all (DNS, refused, timeout)."""


class TaskRegistryClient:
    """Client for the queued-task registry REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: Registry API root, e.g. ``https://host/api/``
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        base_url = base_url or settings.REGISTRY_BASE_URL
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout if timeout is not None else settings.REGISTRY_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, params=params, json=json)
        except httpx.TransportError as e:
            raise RegistryUnavailableError(
                f"Registry unreachable during {method} {path}: {e}"
            ) from e

        if response.is_error:
            try:
                details = response.json() if response.content else {}
            except ValueError:
                details = {"body": response.text}
            raise RegistryAPIError(
                f"{method} {path} failed: {response.status_code}",
                status_code=response.status_code,
                details=details if isinstance(details, dict) else {"body": details},
            )
        return response

    async def check_reachable(self) -> None:
        """Verify the registry answers HTTP at all.

        Any HTTP response, even an error status, counts as reachable.

        Raises:
            RegistryUnavailableError: If no response could be obtained
        """
        try:
            async with self._client() as client:
                await client.get("")
        except httpx.TransportError as e:
            raise RegistryUnavailableError(f"Registry unreachable at {self.base_url}: {e}") from e

    async def fetch_pending_tasks(self, limit: int) -> list[PendingTask]:
        """Fetch at most ``limit`` pending tasks, in registry order.

        Entries without a usable id are skipped with a warning since no
        status can be reported for them.

        Raises:
            RegistryAPIError: If the listing call fails
        """
        if limit <= 0:
            return []

        response = await self._request("GET", "queued-tasks/pendingList", params={"limit": limit})
        try:
            payload = response.json()
        except ValueError as e:
            raise RegistryAPIError("pendingList returned a non-JSON body") from e

        items = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise RegistryAPIError("pendingList returned no task list", details={"body": payload})

        tasks = []
        for item in items[:limit]:
            try:
                tasks.append(PendingTask.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping unparseable pending task entry",
                    extra={"entry": item, "validation_error": str(e)},
                )
        return tasks

    async def update_task(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Report a lifecycle transition (``PUT queued-tasks/update/{id}``)."""
        body = TaskUpdate(
            status=status,
            start_time=start_time,
            end_time=end_time,
            error_message=error_message,
        )
        await self._request(
            "PUT",
            f"queued-tasks/update/{task_id}",
            json=body.model_dump(mode="json", exclude_none=True),
        )

    async def update_status(
        self,
        task_id: int,
        status: TaskStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """Set only the status field (``PATCH queued-tasks/updateStatus/{id}``)."""
        body = TaskStatusUpdate(status=status, error_message=error_message)
        await self._request(
            "PATCH",
            f"queued-tasks/updateStatus/{task_id}",
            json=body.model_dump(mode="json", exclude_none=True),
        )

    async def create_video(self, task_id: int, video_url: str) -> None:
        """Register the produced master playlist as the task's video."""
        body = VideoCreate(queued_task_id=task_id, video_url=video_url)
        await self._request("POST", "videos/create", json=body.model_dump(mode="json"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
