"""Job message published to the transcoding work queue."""

import time
from typing import Union

from pydantic import BaseModel, ConfigDict, Field

from hlspipe.modules.registry.schemas import PendingTask, VideoResolution


class JobMessage(BaseModel):
    """One transcoding unit of work.

    Serialized with camelCase keys:
    ``{inputPath, outputPath, resolutions[], queuedTaskId}``.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    input_path: str = Field(..., min_length=1, alias="inputPath")
    output_path: str = Field(..., alias="outputPath")
    resolutions: list[VideoResolution] = Field(..., min_length=1)
    queued_task_id: int = Field(..., alias="queuedTaskId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, body: Union[bytes, str]) -> "JobMessage":
        """Parse a queue body.

        Raises:
            pydantic.ValidationError: If the body is not a valid job message
        """
        return cls.model_validate_json(body)


def build_job_message(task: PendingTask, path_prefix: str = "transcoded") -> JobMessage:
    """Build the job message for a pending task.

    The output path is only a hint (``<prefix>/<epoch-ms>-<title>``); the
    transcoder always writes into a fresh directory of its own.

    Raises:
        ValueError: If the task's upload record is missing or invalid
    """
    upload = task.upload()
    return JobMessage(
        input_path=upload.path,
        output_path=f"{path_prefix}/{int(time.time() * 1000)}-{upload.title}",
        resolutions=upload.resolutions,
        queued_task_id=task.id,
    )
