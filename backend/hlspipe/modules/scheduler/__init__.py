"""Scheduler module: admission-controlled polling of pending tasks."""

from hlspipe.modules.scheduler.service import CycleResult, PendingTaskScheduler

__all__ = ["CycleResult", "PendingTaskScheduler"]
