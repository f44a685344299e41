"""Job producer: publishes transcode jobs to the durable work queue."""

import logging

from hlspipe.modules.queue.schemas import JobMessage
from hlspipe.modules.queue.transport import QueueTransport

logger = logging.getLogger(__name__)


class TranscodeJobProducer:
    """Publishes :class:`JobMessage` bodies as persistent messages."""

    def __init__(self, transport: QueueTransport, queue_name: str):
        self.transport = transport
        self.queue_name = queue_name

    def send(self, job: JobMessage) -> None:
        """Publish one job.

        Raises:
            QueueTransportError: If the transport is not connected or the
                broker rejects the message
        """
        self.transport.publish(self.queue_name, job.to_json(), durable=True, persistent=True)
        logger.info(
            "Published transcode job",
            extra={
                "task_id": job.queued_task_id,
                "queue_name": self.queue_name,
                "resolutions": [r.label for r in job.resolutions],
            },
        )
