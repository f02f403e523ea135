# vspilot/core/tests/test_task_scheduler.py
import asyncio
import threading
import time
from datetime import datetime, timedelta
from typing import List

import pytest
from unittest.mock import MagicMock

from vspilot.core.automation_task import AutomationTask
from vspilot.core.project_models import ProgressInfo, TaskPriority, TaskState
from vspilot.core.task_scheduler import PriorityLanes, ScheduledEntry, TaskScheduler

WAIT = 5.0

# --- Helpers ---

def recording_task(name: str, log: List[str]) -> AutomationTask:
    async def action(progress):
        log.append(name)
    return AutomationTask(name, action)


def gate_task(gate: threading.Event, started: threading.Event = None) -> AutomationTask:
    """A task that blocks the worker until `gate` is set."""
    async def action(progress):
        if started is not None:
            started.set()
        while not gate.is_set():
            await asyncio.sleep(0.005)
    return AutomationTask("gate", action)


def looping_task(started: threading.Event) -> AutomationTask:
    """A task that reports progress forever, so only cancellation ends it."""
    async def action(progress):
        started.set()
        while True:
            progress(ProgressInfo(stage="Working", progress=50))
            await asyncio.sleep(0.005)
    return AutomationTask("loop", action)


# --- Fixtures ---

@pytest.fixture
def events() -> MagicMock:
    """Collects every scheduler event."""
    return MagicMock()


@pytest.fixture
def scheduler(events: MagicMock):
    sched = TaskScheduler(
        on_task_queued=events.queued,
        on_progress=events.progress,
        on_task_completed=events.completed,
        on_task_cancelled=events.cancelled,
        on_task_failed=events.failed,
        poll_interval=0.01,
    )
    yield sched
    sched.stop(wait=True, timeout=WAIT)


# --- Test Cases ---

class TestSchedulerInitialization:

    def test_rejects_non_positive_poll_interval(self):
        """A zero poll interval would make the idle worker spin."""
        with pytest.raises(ValueError, match="poll_interval"):
            TaskScheduler(poll_interval=0)

    def test_worker_starts_lazily(self, scheduler: TaskScheduler):
        """No worker thread exists until the first task is enqueued."""
        assert not scheduler.is_running
        assert scheduler.queued_task_count == 0
        assert scheduler.current_task_id is None

    def test_enqueue_none_fails(self, scheduler: TaskScheduler):
        with pytest.raises(ValueError, match="Cannot enqueue a null task."):
            scheduler.enqueue(None)


class TestSchedulerOrdering:

    def test_same_priority_runs_in_fifo_order(self, scheduler: TaskScheduler):
        """Tasks of equal priority run in the order they were enqueued."""
        log: List[str] = []
        gate = threading.Event()
        scheduler.enqueue(gate_task(gate))
        for name in ("a", "b", "c"):
            scheduler.enqueue(recording_task(name, log))
        gate.set()
        assert scheduler.wait_until_idle(WAIT)
        assert log == ["a", "b", "c"]

    def test_higher_priority_runs_first(self, scheduler: TaskScheduler):
        """Queued work is served from the highest populated priority lane."""
        log: List[str] = []
        gate = threading.Event()
        started = threading.Event()
        scheduler.enqueue(gate_task(gate, started), TaskPriority.CRITICAL)
        assert started.wait(WAIT)
        scheduler.enqueue(recording_task("low", log), TaskPriority.LOW)
        scheduler.enqueue(recording_task("normal", log), TaskPriority.NORMAL)
        scheduler.enqueue(recording_task("high", log), TaskPriority.HIGH)
        scheduler.enqueue(recording_task("critical", log), TaskPriority.CRITICAL)
        gate.set()
        assert scheduler.wait_until_idle(WAIT)
        assert log == ["critical", "high", "normal", "low"]

    def test_running_task_is_not_preempted(self, scheduler: TaskScheduler):
        """A higher-priority arrival waits for the running task to finish."""
        log: List[str] = []
        gate = threading.Event()
        started = threading.Event()

        async def slow(progress):
            started.set()
            while not gate.is_set():
                await asyncio.sleep(0.005)
            log.append("slow")

        scheduler.enqueue(AutomationTask("slow", slow), TaskPriority.LOW)
        assert started.wait(WAIT)
        scheduler.enqueue(recording_task("urgent", log), TaskPriority.CRITICAL)
        gate.set()
        assert scheduler.wait_until_idle(WAIT)
        assert log == ["slow", "urgent"]

    def test_only_one_task_runs_at_a_time(self, scheduler: TaskScheduler):
        active = 0
        peak = 0
        lock = threading.Lock()

        async def action(progress):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            await asyncio.sleep(0.01)
            with lock:
                active -= 1

        for i in range(5):
            scheduler.enqueue(AutomationTask(f"task {i}", action))
        assert scheduler.wait_until_idle(WAIT)
        assert peak == 1

    def test_concurrent_enqueues_share_one_worker(self):
        """Many threads enqueuing at once must not start a second worker."""
        name = "vspilot-scheduler-concurrent"
        sched = TaskScheduler(poll_interval=0.01, name=name)
        active = 0
        peak = 0
        workers_seen = set()
        completed = 0
        lock = threading.Lock()

        def live_workers() -> int:
            return sum(1 for t in threading.enumerate() if t.name == name)

        async def action(progress):
            nonlocal active, peak, completed
            with lock:
                active += 1
                peak = max(peak, active)
                workers_seen.add(live_workers())
            await asyncio.sleep(0.002)
            with lock:
                active -= 1
                completed += 1

        barrier = threading.Barrier(8)

        def producer(index: int):
            barrier.wait(WAIT)
            for j in range(3):
                sched.enqueue(AutomationTask(f"task {index}-{j}", action))

        producers = [threading.Thread(target=producer, args=(i,)) for i in range(8)]
        try:
            for t in producers:
                t.start()
            for t in producers:
                t.join(WAIT)

            assert sched.wait_until_idle(WAIT)
            assert live_workers() == 1
            assert workers_seen == {1}
            assert completed == 24
            assert peak == 1
        finally:
            sched.stop(wait=True, timeout=WAIT)

    def test_scheduled_time_delays_start(self, scheduler: TaskScheduler):
        """A task does not start before its scheduled time."""
        ran_at: List[float] = []

        async def action(progress):
            ran_at.append(time.monotonic())

        start = time.monotonic()
        scheduler.enqueue(AutomationTask("later", action), scheduled_time=datetime.now() + timedelta(seconds=0.2))
        assert scheduler.wait_until_idle(WAIT)
        assert ran_at and ran_at[0] - start >= 0.15


class TestPriorityLanes:

    def test_high_priority_stream_starves_low_lane(self):
        """There is no aging: the low entry waits until every higher entry is served."""
        lanes = PriorityLanes()
        task = AutomationTask("t", MagicMock())
        low = ScheduledEntry(task=task, priority=TaskPriority.LOW, scheduled_time=datetime.now())
        highs = [ScheduledEntry(task=task, priority=TaskPriority.HIGH, scheduled_time=datetime.now()) for _ in range(3)]
        lanes.push(low)
        for entry in highs:
            lanes.push(entry)

        popped = [lanes.pop() for _ in range(4)]
        assert popped == highs + [low]
        assert lanes.pop() is None

    def test_drain_empties_all_lanes(self):
        lanes = PriorityLanes()
        task = AutomationTask("t", MagicMock())
        for priority in TaskPriority:
            lanes.push(ScheduledEntry(task=task, priority=priority, scheduled_time=datetime.now()))
        drained = lanes.drain()
        assert [e.priority for e in drained] == sorted(TaskPriority, reverse=True)
        assert len(lanes) == 0


class TestSchedulerEvents:

    def test_completed_task_reports_progress_and_completion(self, scheduler: TaskScheduler, events: MagicMock):
        log: List[str] = []
        task = recording_task("work", log)
        entry_id = scheduler.enqueue(task)
        assert scheduler.wait_until_idle(WAIT)

        events.queued.assert_called_once_with(entry_id, task)
        events.completed.assert_called_once_with(entry_id)
        events.cancelled.assert_not_called()
        stages = [c.args[1].stage for c in events.progress.call_args_list]
        assert stages == ["Starting", "Complete"]
        assert events.progress.call_args_list[-1].args[1].is_complete
        assert scheduler.get_task_state(entry_id) is None

    def test_failing_task_does_not_stop_the_loop(self, scheduler: TaskScheduler, events: MagicMock):
        """An exception in one task is reported and the next task still runs."""
        log: List[str] = []

        async def boom(progress):
            raise RuntimeError("task exploded")

        failing_id = scheduler.enqueue(AutomationTask("boom", boom))
        scheduler.enqueue(recording_task("after", log))
        assert scheduler.wait_until_idle(WAIT)

        events.failed.assert_called_once()
        failed_id, error = events.failed.call_args.args
        assert failed_id == failing_id
        assert isinstance(error, RuntimeError)
        assert log == ["after"]

    def test_callback_exception_is_contained(self, events: MagicMock):
        """A raising observer is logged and the worker keeps going."""
        log: List[str] = []
        sched = TaskScheduler(on_progress=MagicMock(side_effect=ValueError("observer bug")), poll_interval=0.01)
        try:
            sched.enqueue(recording_task("one", log))
            sched.enqueue(recording_task("two", log))
            assert sched.wait_until_idle(WAIT)
        finally:
            sched.stop(wait=True, timeout=WAIT)
        assert log == ["one", "two"]


class TestSchedulerCancellation:

    def test_cancel_queued_task(self, scheduler: TaskScheduler, events: MagicMock):
        """A queued entry is cancelled at once and never runs."""
        log: List[str] = []
        gate = threading.Event()
        started = threading.Event()
        scheduler.enqueue(gate_task(gate, started))
        assert started.wait(WAIT)
        entry_id = scheduler.enqueue(recording_task("never", log))

        assert scheduler.cancel(entry_id) is True
        events.cancelled.assert_called_once_with(entry_id)
        assert scheduler.cancel(entry_id) is False

        gate.set()
        assert scheduler.wait_until_idle(WAIT)
        assert log == []
        assert events.cancelled.call_count == 1

    def test_cancel_running_task(self, scheduler: TaskScheduler, events: MagicMock):
        """A running task stops at its next progress report."""
        started = threading.Event()
        entry_id = scheduler.enqueue(looping_task(started))
        assert started.wait(WAIT)
        assert scheduler.get_task_state(entry_id) == TaskState.RUNNING

        assert scheduler.cancel(entry_id) is True
        assert scheduler.wait_until_idle(WAIT)

        events.cancelled.assert_called_once_with(entry_id)
        events.completed.assert_not_called()
        events.failed.assert_not_called()
        assert scheduler.cancel(entry_id) is False

    def test_cancel_unknown_or_finished_task(self, scheduler: TaskScheduler):
        log: List[str] = []
        entry_id = scheduler.enqueue(recording_task("quick", log))
        assert scheduler.wait_until_idle(WAIT)
        assert scheduler.cancel(entry_id) is False
        assert scheduler.cancel("no-such-id") is False

    def test_cancel_while_waiting_for_scheduled_time(self, scheduler: TaskScheduler, events: MagicMock):
        log: List[str] = []
        entry_id = scheduler.enqueue(recording_task("later", log), scheduled_time=datetime.now() + timedelta(seconds=30))
        deadline = time.monotonic() + WAIT
        while scheduler.current_task_id != entry_id and time.monotonic() < deadline:
            time.sleep(0.005)

        assert scheduler.cancel(entry_id) is True
        assert scheduler.wait_until_idle(WAIT)
        assert log == []
        events.cancelled.assert_called_once_with(entry_id)


class TestSchedulerStop:

    def test_stop_cancels_pending_tasks(self, scheduler: TaskScheduler, events: MagicMock):
        log: List[str] = []
        gate = threading.Event()
        started = threading.Event()
        scheduler.enqueue(gate_task(gate, started))
        assert started.wait(WAIT)
        pending = [scheduler.enqueue(recording_task(name, log)) for name in ("x", "y")]

        scheduler.stop()
        gate.set()
        scheduler.stop(wait=True, timeout=WAIT)

        assert scheduler.is_stopped
        assert not scheduler.is_running
        assert log == []
        cancelled = [c.args[0] for c in events.cancelled.call_args_list]
        assert sorted(cancelled) == sorted(pending)

    def test_enqueue_after_stop_is_cancelled_immediately(self, scheduler: TaskScheduler, events: MagicMock):
        """Stopping is terminal: later tasks are accepted but cancelled."""
        scheduler.stop(wait=True, timeout=WAIT)
        log: List[str] = []
        entry_id = scheduler.enqueue(recording_task("late", log))

        assert entry_id
        events.cancelled.assert_called_once_with(entry_id)
        assert scheduler.queued_task_count == 0
        assert scheduler.cancel(entry_id) is False
        assert log == []
