"""Pydantic schemas for the task registry API."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskStatus(str, Enum):
    """Lifecycle status of a queued task as stored by the registry."""
    PENDING = "Pending"
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    ERROR = "Error"


class VideoResolution(BaseModel):
    """One requested output rendition.

    ``bitrate`` is in kbit/s. The registry stores it either as a number or
    as a string with a ``k`` suffix ("800k"); both are accepted.
    """
    model_config = ConfigDict(frozen=True)

    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    bitrate: int = Field(..., gt=0, description="Target video bitrate in kbit/s")
    fps: float = Field(..., gt=0)

    @field_validator("bitrate", mode="before")
    @classmethod
    def _strip_kilo_suffix(cls, value: Union[int, str]) -> Union[int, str]:
        if isinstance(value, str):
            value = value.strip()
            if value.lower().endswith("k"):
                value = value[:-1]
        return value

    @property
    def label(self) -> str:
        """Folder / log label, e.g. ``720p``."""
        return f"{self.height}p"

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth in bit/s as advertised in the master playlist."""
        return self.bitrate * 1000

    @property
    def dimensions(self) -> str:
        return f"{self.width}x{self.height}"


class VideoUpload(BaseModel):
    """The uploaded source video a task refers to."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int] = None
    title: str = ""
    path: str = Field(..., min_length=1, description="Path relative to the upload directory")
    resolutions: list[VideoResolution] = Field(default_factory=list, alias="resolution")


class PendingTask(BaseModel):
    """A task awaiting transcoding, as listed by ``pendingList``.

    The nested upload is kept raw so that a malformed upload record fails
    for this task only, when the job message is built, instead of failing
    the whole listing.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    status: str = TaskStatus.PENDING.value
    video_upload: Optional[dict[str, Any]] = Field(None, alias="videoUpload")

    def upload(self) -> VideoUpload:
        """Validate and return the nested upload record.

        Raises:
            ValueError: If the task carries no upload record
            pydantic.ValidationError: If the upload record is malformed
        """
        if self.video_upload is None:
            raise ValueError(f"Task {self.id} has no video upload attached")
        return VideoUpload.model_validate(self.video_upload)


class TaskUpdate(BaseModel):
    """Body of ``PUT queued-tasks/update/{id}``."""
    status: TaskStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None


class TaskStatusUpdate(BaseModel):
    """Body of ``PATCH queued-tasks/updateStatus/{id}``."""
    status: TaskStatus
    error_message: Optional[str] = None


class VideoCreate(BaseModel):
    """Body of ``POST videos/create``."""
    queued_task_id: int
    video_url: str
