"""Task registry module: typed client and best-effort status reporting."""

from hlspipe.modules.registry.client import (
    RegistryAPIError,
    RegistryUnavailableError,
    TaskRegistryClient,
)
from hlspipe.modules.registry.reporter import StatusReporter
from hlspipe.modules.registry.schemas import (
    PendingTask,
    TaskStatus,
    VideoResolution,
    VideoUpload,
)

__all__ = [
    "PendingTask",
    "RegistryAPIError",
    "RegistryUnavailableError",
    "StatusReporter",
    "TaskRegistryClient",
    "TaskStatus",
    "VideoResolution",
    "VideoUpload",
]
