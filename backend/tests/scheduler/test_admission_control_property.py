"""Property-based tests for scheduler admission control.

**Feature: hls-pipeline, Property 1: Admission Backpressure**
**Feature: hls-pipeline, Property 2: Bounded Admission**
**Feature: hls-pipeline, Property 7: One Job Message Per Task**
"""

import asyncio
import json
import threading

import pytest
from hypothesis import given, settings, strategies as st

from conftest import FakeRegistry, FakeTransport, make_task
from hlspipe.modules.registry.schemas import PendingTask, TaskStatus
from hlspipe.modules.scheduler.service import (
    SKIP_ADMISSION_ERROR,
    SKIP_CYCLE_IN_PROGRESS,
    SKIP_QUEUE_FULL,
    PendingTaskScheduler,
)

QUEUE = "transcoding-video"


def make_scheduler(transport, registry, capacity: int = 10) -> PendingTaskScheduler:
    return PendingTaskScheduler(
        transport=transport,
        registry=registry,
        queue_name=QUEUE,
        max_queue_capacity=capacity,
        interval_seconds=0.01,
    )


class TestAdmissionBackpressure:
    """**Feature: hls-pipeline, Property 1: Admission Backpressure**"""

    @given(
        capacity=st.integers(min_value=0, max_value=50),
        overflow=st.integers(min_value=0, max_value=50),
    )
    @settings(max_examples=100)
    def test_full_queue_never_polls_registry(self, capacity: int, overflow: int) -> None:
        """For any depth >= capacity, the cycle makes no registry call and
        publishes nothing."""
        transport = FakeTransport(depth=capacity + overflow)
        registry = FakeRegistry(tasks=[make_task(i) for i in range(1, 6)])
        scheduler = make_scheduler(transport, registry, capacity=capacity)

        result = asyncio.run(scheduler.run_cycle())

        assert result.skipped_reason == SKIP_QUEUE_FULL
        assert result.available <= 0
        assert registry.fetch_calls == []
        assert transport.published == []
        assert registry.status_updates == []

    def test_capacity_ten_depth_ten_makes_zero_registry_calls(self) -> None:
        transport = FakeTransport(depth=10)
        registry = FakeRegistry(tasks=[make_task(1)])
        scheduler = make_scheduler(transport, registry, capacity=10)

        result = asyncio.run(scheduler.run_cycle())

        assert result.skipped
        assert registry.fetch_calls == []
        assert registry.updates == [] and registry.status_updates == [] and registry.videos == []

    def test_rerun_after_queue_filled_publishes_no_duplicates(self) -> None:
        """Once a cycle has filled the queue, re-running with unchanged
        registry state publishes nothing more."""
        transport = FakeTransport(depth=7)
        registry = FakeRegistry(tasks=[make_task(i) for i in range(1, 10)])
        scheduler = make_scheduler(transport, registry, capacity=10)

        first = asyncio.run(scheduler.run_cycle())
        second = asyncio.run(scheduler.run_cycle())

        assert first.published == [1, 2, 3]
        assert second.skipped_reason == SKIP_QUEUE_FULL
        assert len(transport.published) == 3
        assert registry.fetch_calls == [3]


class TestBoundedAdmission:
    """**Feature: hls-pipeline, Property 2: Bounded Admission**"""

    @given(
        capacity=st.integers(min_value=1, max_value=30),
        depth=st.integers(min_value=0, max_value=29),
        pending=st.integers(min_value=0, max_value=40),
    )
    @settings(max_examples=100)
    def test_fetch_limit_equals_available_slots(self, capacity: int, depth: int, pending: int) -> None:
        """The registry is asked for exactly ``capacity - depth`` tasks and
        never more than that many jobs are published."""
        if depth >= capacity:
            depth = capacity - 1
        transport = FakeTransport(depth=depth)
        registry = FakeRegistry(tasks=[make_task(i) for i in range(1, pending + 1)])
        scheduler = make_scheduler(transport, registry, capacity=capacity)

        result = asyncio.run(scheduler.run_cycle())

        available = capacity - depth
        assert registry.fetch_calls == [available]
        assert len(transport.published) == min(available, pending)
        assert len(transport.published) <= available
        assert transport.depth_calls == 1

    def test_two_pending_tasks_are_published_as_two_jobs(self) -> None:
        transport = FakeTransport(depth=3)
        registry = FakeRegistry(tasks=[make_task(1), make_task(2)])
        scheduler = make_scheduler(transport, registry, capacity=10)

        result = asyncio.run(scheduler.run_cycle())

        assert registry.fetch_calls == [7]
        assert result.published == [1, 2]
        assert result.failed == {}
        bodies = [json.loads(payload) for _, payload, _, _ in transport.published]
        assert [b["queuedTaskId"] for b in bodies] == [1, 2]
        for body in bodies:
            assert set(body) == {"inputPath", "outputPath", "resolutions", "queuedTaskId"}
            assert [r["height"] for r in body["resolutions"]] == [360, 720]
            assert body["outputPath"].startswith("transcoded/")
        for queue_name, _, durable, persistent in transport.published:
            assert queue_name == QUEUE
            assert durable and persistent

    def test_empty_registry_ends_cycle_without_action(self) -> None:
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[])
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.fetched == 0
        assert result.skipped_reason is None
        assert transport.published == []


class TestPublishIsolation:
    """A failing task does not affect its siblings."""

    def test_invalid_task_is_reported_and_siblings_still_published(self) -> None:
        broken = make_task(2)
        del broken["videoUpload"]
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[make_task(1), broken, make_task(3)])
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.published == [1, 3]
        assert list(result.failed) == [2]
        errors = [u for u in registry.status_updates if u["status"] == TaskStatus.ERROR]
        assert errors == [{
            "task_id": 2,
            "status": TaskStatus.ERROR,
            "error_message": result.failed[2],
        }]

    def test_publish_failure_is_reported_with_diagnostic(self) -> None:
        transport = FakeTransport(fail_publish_for={"poison"})
        registry = FakeRegistry(tasks=[make_task(1, title="poison"), make_task(2)])
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.published == [2]
        assert "broker refused" in result.failed[1]
        assert registry.final_status(1) == TaskStatus.ERROR

    def test_task_without_resolutions_is_rejected(self) -> None:
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[make_task(4, heights=())])
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.published == []
        assert 4 in result.failed
        assert transport.published == []

    def test_failed_error_report_does_not_abort_batch(self) -> None:
        broken = make_task(1)
        broken["videoUpload"]["path"] = ""
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[broken, make_task(2)], fail_updates=True)
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.published == [2]
        assert list(result.failed) == [1]

    def test_unexpected_publish_error_stays_with_its_task(self) -> None:
        class FlakyTransport(FakeTransport):
            def publish(self, queue_name, payload, durable=True, persistent=True) -> None:
                if "cursed" in payload:
                    raise RuntimeError("serializer exploded")
                super().publish(queue_name, payload, durable, persistent)

        transport = FlakyTransport()
        registry = FakeRegistry(tasks=[make_task(1), make_task(2, title="cursed"), make_task(3)])
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.published == [1, 3]
        assert result.failed == {2: "serializer exploded"}
        assert registry.final_status(2) == TaskStatus.ERROR


class TestSinglePublicationPerTask:
    """**Feature: hls-pipeline, Property 7: One Job Message Per Task**"""

    def test_published_tasks_are_marked_queued(self) -> None:
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[make_task(1), make_task(2)])
        scheduler = make_scheduler(transport, registry)

        asyncio.run(scheduler.run_cycle())

        assert registry.status_updates == [
            {"task_id": 1, "status": TaskStatus.QUEUED, "error_message": None},
            {"task_id": 2, "status": TaskStatus.QUEUED, "error_message": None},
        ]

    @given(cycles=st.integers(min_value=2, max_value=6), pending=st.integers(min_value=1, max_value=8))
    @settings(max_examples=50)
    def test_consecutive_cycles_below_capacity_publish_each_task_once(self, cycles: int, pending: int) -> None:
        transport = FakeTransport(depth=0)
        registry = FakeRegistry(tasks=[make_task(i) for i in range(1, pending + 1)])
        scheduler = make_scheduler(transport, registry, capacity=10)

        results = [asyncio.run(scheduler.run_cycle()) for _ in range(cycles)]

        published_ids = [json.loads(payload)["queuedTaskId"] for _, payload, _, _ in transport.published]
        assert sorted(published_ids) == list(range(1, pending + 1))
        assert all(r.fetched == 0 for r in results[1:])

    def test_tasks_not_pending_are_never_published(self) -> None:
        class StaleRegistry(FakeRegistry):
            async def fetch_pending_tasks(self, limit):
                self.fetch_calls.append(limit)
                return [PendingTask.model_validate(t) for t in self.tasks[:limit]]

        queued = make_task(1)
        queued["status"] = TaskStatus.QUEUED.value
        transport = FakeTransport()
        registry = StaleRegistry(tasks=[queued, make_task(2)])
        scheduler = make_scheduler(transport, registry)

        first = asyncio.run(scheduler.run_cycle())
        second = asyncio.run(scheduler.run_cycle())

        assert first.published == [2]
        assert first.ignored == [1]
        assert second.published == []
        assert sorted(second.ignored) == [1, 2]
        assert len(transport.published) == 1

    def test_task_is_marked_queued_before_its_message_is_published(self) -> None:
        registry = FakeRegistry(tasks=[make_task(1)])

        class WatchingTransport(FakeTransport):
            def publish(self, queue_name, payload, durable=True, persistent=True):
                self.status_at_publish = registry.final_status(1)
                super().publish(queue_name, payload, durable, persistent)

        transport = WatchingTransport()
        scheduler = make_scheduler(transport, registry)

        asyncio.run(scheduler.run_cycle())

        assert transport.status_at_publish == TaskStatus.QUEUED

    def test_failed_publish_leaves_task_in_error(self) -> None:
        transport = FakeTransport(fail_publish_for={"clip-1"})
        registry = FakeRegistry(tasks=[make_task(1)])
        scheduler = make_scheduler(transport, registry)

        asyncio.run(scheduler.run_cycle())

        assert [u["status"] for u in registry.status_updates] == [TaskStatus.QUEUED, TaskStatus.ERROR]
        assert registry.final_status(1) == TaskStatus.ERROR


class TestAdmissionErrors:
    def test_registry_failure_aborts_cycle_without_mutation(self) -> None:
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[make_task(1)], fail_fetch=True)
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.skipped_reason == SKIP_ADMISSION_ERROR
        assert transport.published == []
        assert registry.status_updates == []

    def test_unconnected_transport_aborts_cycle(self) -> None:
        transport = FakeTransport(connected=False)
        registry = FakeRegistry(tasks=[make_task(1)])
        scheduler = make_scheduler(transport, registry)

        result = asyncio.run(scheduler.run_cycle())

        assert result.skipped_reason == SKIP_ADMISSION_ERROR
        assert registry.fetch_calls == []


class TestNonReentrancy:
    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self) -> None:
        entered = asyncio.Event()
        release = asyncio.Event()

        class SlowRegistry(FakeRegistry):
            async def fetch_pending_tasks(self, limit):
                entered.set()
                await release.wait()
                return await super().fetch_pending_tasks(limit)

        transport = FakeTransport()
        registry = SlowRegistry(tasks=[make_task(1)])
        scheduler = make_scheduler(transport, registry)

        first = asyncio.create_task(scheduler.run_cycle())
        await entered.wait()
        overlapping = await scheduler.run_cycle()
        release.set()
        completed = await first

        assert overlapping.skipped_reason == SKIP_CYCLE_IN_PROGRESS
        assert completed.published == [1]
        assert len(transport.published) == 1

    def test_run_forever_stops_on_event(self) -> None:
        transport = FakeTransport()
        registry = FakeRegistry(tasks=[make_task(1)])
        scheduler = make_scheduler(transport, registry)
        stop = threading.Event()

        thread = threading.Thread(target=scheduler.run_forever, args=(stop,))
        thread.start()
        try:
            for _ in range(500):
                if transport.published:
                    break
                stop.wait(0.01)
        finally:
            stop.set()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert transport.published
        assert scheduler.last_cycle is not None
