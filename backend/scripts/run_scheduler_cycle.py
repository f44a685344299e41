"""Run a single admission cycle against the configured broker and registry.

Useful to drain a backlog by hand or to check the wiring of a new
deployment without starting the worker.

Usage:
    python -m scripts.run_scheduler_cycle
"""

import asyncio
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hlspipe.core.config import settings
from hlspipe.core.logging import setup_logging
from hlspipe.modules.queue.transport import QueueTransport
from hlspipe.modules.registry.client import TaskRegistryClient
from hlspipe.modules.scheduler.service import PendingTaskScheduler


async def main() -> int:
    """Connect, run one cycle, print what it did."""
    setup_logging(level=settings.LOG_LEVEL, json_format=False)

    transport = QueueTransport(settings.QUEUE_URL, heartbeat=settings.QUEUE_HEARTBEAT_SECONDS)
    transport.connect()
    try:
        scheduler = PendingTaskScheduler(
            transport=transport,
            registry=TaskRegistryClient(),
            queue_name=settings.QUEUE_NAME,
            max_queue_capacity=settings.MAX_QUEUE_CAPACITY,
            path_prefix=settings.TRANSCODED_PATH_PREFIX,
        )
        result = await scheduler.run_cycle()
    finally:
        transport.close()

    print("=" * 60)
    print(f"Available slots : {result.available}")
    print(f"Fetched tasks   : {result.fetched}")
    print(f"Published       : {result.published}")
    print(f"Failed          : {result.failed}")
    print(f"Skipped         : {result.skipped_reason or '-'}")
    print("=" * 60)
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
