# vspilot/core/task_scheduler.py
import asyncio
import dataclasses
import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .automation_task import AutomationTask
from .exceptions import TaskCancelledError
from .project_models import ProgressInfo, TaskPriority, TaskState

logger = logging.getLogger(__name__)

# --- Callback type hints ---
TaskQueuedCallable = Callable[[str, AutomationTask], None]
ProgressChangedCallable = Callable[[str, ProgressInfo], None]
TaskCompletedCallable = Callable[[str], None]
TaskCancelledCallable = Callable[[str], None]
TaskFailedCallable = Callable[[str, Exception], None]


@dataclasses.dataclass(eq=False)
class ScheduledEntry:
    """A task bound to its priority, due time and cancellation handle."""
    task: AutomationTask
    priority: TaskPriority
    scheduled_time: datetime
    id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))
    cancel_event: threading.Event = dataclasses.field(default_factory=threading.Event)
    state: TaskState = TaskState.QUEUED

    def seconds_until_due(self) -> float:
        # Works for naive (local) and timezone-aware due times alike.
        now = datetime.now(self.scheduled_time.tzinfo)
        return (self.scheduled_time - now).total_seconds()


class PriorityLanes:
    """
    One FIFO lane per priority level. `pop` always serves the highest populated
    lane, so a steady stream of high-priority work starves the lower lanes.
    """
    def __init__(self):
        self._lanes: Dict[TaskPriority, Deque[ScheduledEntry]] = {p: deque() for p in TaskPriority}
        self._lock = threading.Lock()

    def push(self, entry: ScheduledEntry) -> None:
        with self._lock:
            self._lanes[entry.priority].append(entry)

    def pop(self) -> Optional[ScheduledEntry]:
        with self._lock:
            for priority in sorted(self._lanes, reverse=True):
                lane = self._lanes[priority]
                if lane:
                    return lane.popleft()
        return None

    def drain(self) -> List[ScheduledEntry]:
        """Removes and returns every queued entry, highest priority first."""
        with self._lock:
            drained: List[ScheduledEntry] = []
            for priority in sorted(self._lanes, reverse=True):
                drained.extend(self._lanes[priority])
                self._lanes[priority].clear()
            return drained

    def __len__(self) -> int:
        with self._lock:
            return sum(len(lane) for lane in self._lanes.values())


class TaskScheduler:
    """
    Serializes automation tasks through priority lanes and a single background worker.

    The worker is a daemon thread running its own asyncio event loop; tasks are
    executed one at a time in that loop. It is started lazily by the first
    `enqueue` and runs until `stop()` is called.

    Observers are notified through the constructor callbacks. Callbacks are
    invoked from the worker thread (or from the calling thread for `enqueue`,
    `cancel` and `stop`); an exception raised by a callback is logged and never
    breaks the worker loop.
    """
    def __init__(self,
                 on_task_queued: Optional[TaskQueuedCallable] = None,
                 on_progress: Optional[ProgressChangedCallable] = None,
                 on_task_completed: Optional[TaskCompletedCallable] = None,
                 on_task_cancelled: Optional[TaskCancelledCallable] = None,
                 on_task_failed: Optional[TaskFailedCallable] = None,
                 poll_interval: float = 0.5,
                 name: str = "vspilot-scheduler"):
        """
        Args:
            on_task_queued: Called with (entry_id, task) after a task is accepted.
            on_progress: Called with (entry_id, ProgressInfo) for each progress tick.
            on_task_completed: Called with the entry id when a task finishes normally.
            on_task_cancelled: Called with the entry id when a task is cancelled.
            on_task_failed: Called with (entry_id, exception) when a task raises.
            poll_interval: Seconds the worker sleeps when all lanes are empty.
            name: Name of the worker thread (shows up in log records).
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be a positive number of seconds.")
        self._on_task_queued = on_task_queued
        self._on_progress = on_progress
        self._on_task_completed = on_task_completed
        self._on_task_cancelled = on_task_cancelled
        self._on_task_failed = on_task_failed
        self.poll_interval = poll_interval
        self._name = name

        self._lanes = PriorityLanes()
        self._entries: Dict[str, ScheduledEntry] = {}
        self._active_entry: Optional[ScheduledEntry] = None
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        logger.info(f"TaskScheduler '{self._name}' initialized (poll interval {self.poll_interval}s).")

    # --- Public API ---

    @property
    def queued_task_count(self) -> int:
        return len(self._lanes)

    @property
    def is_running(self) -> bool:
        """True while the worker thread is alive and the scheduler has not been stopped."""
        worker = self._worker
        return worker is not None and worker.is_alive() and not self._stop_event.is_set()

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def current_task_id(self) -> Optional[str]:
        with self._lock:
            return self._active_entry.id if self._active_entry else None

    def get_task_state(self, entry_id: str) -> Optional[TaskState]:
        """Returns the state of a pending or running entry, or None once it has finished."""
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.state if entry else None

    def enqueue(self, task: AutomationTask, priority: TaskPriority = TaskPriority.NORMAL, scheduled_time: Optional[datetime] = None) -> str:
        """
        Adds a task to the lane for its priority. Never blocks on task execution.

        Args:
            task: The task to run.
            priority: Lane to place the task in. Cannot be changed afterwards.
            scheduled_time: Earliest time the task may start. Defaults to now.

        Returns:
            The unique id of the scheduled entry, used for `cancel`.

        Raises:
            ValueError: If task is None or the priority is not a known level.
        """
        if task is None:
            raise ValueError("Cannot enqueue a null task.")
        entry = ScheduledEntry(task=task, priority=TaskPriority(priority), scheduled_time=scheduled_time or datetime.now())

        with self._lock:
            stopped = self._stop_event.is_set()
            if stopped:
                # Accepted for bookkeeping, but it can never run.
                entry.cancel_event.set()
                entry.state = TaskState.CANCELLED
            else:
                self._entries[entry.id] = entry
                self._lanes.push(entry)

        logger.info(f"Task '{task.description}' queued as {entry.id} with priority {entry.priority.name}.")
        self._emit(self._on_task_queued, entry.id, task)

        if stopped:
            logger.warning(f"Scheduler '{self._name}' is stopped. Task {entry.id} was cancelled immediately.")
            self._emit(self._on_task_cancelled, entry.id)
            return entry.id

        self._ensure_worker()
        return entry.id

    def cancel(self, entry_id: str) -> bool:
        """
        Requests cancellation of a queued or running entry.

        A queued entry is reported as cancelled immediately and skipped when its
        turn comes. A running entry observes the request at its next progress
        tick.

        Returns:
            True if the request was recorded, False if the id is unknown, the entry
            has already finished, or it was already cancelled.
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.state.is_terminal or entry.cancel_event.is_set():
                logger.debug(f"Cancel request for '{entry_id}' ignored (unknown, finished or already cancelled).")
                return False
            entry.cancel_event.set()
            was_queued = entry.state == TaskState.QUEUED
            if was_queued:
                entry.state = TaskState.CANCELLED
                self._entries.pop(entry.id, None)

        if was_queued:
            logger.info(f"Queued task {entry_id} cancelled.")
            self._emit(self._on_task_cancelled, entry_id)
        else:
            logger.info(f"Cancellation requested for running task {entry_id}.")
        return True

    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Stops the worker loop and cancels every entry that has not started yet.

        A task that is already running is allowed to finish. Stopping is terminal:
        the scheduler cannot be restarted.

        Args:
            wait: If True, block until the worker thread has exited.
            timeout: Maximum seconds to wait when `wait` is True.
        """
        with self._lock:
            already_stopped = self._stop_event.is_set()
            pending: List[ScheduledEntry] = []
            if not already_stopped:
                self._stop_event.set()
                self._lanes.drain()
                pending = [e for e in self._entries.values() if e.state == TaskState.QUEUED]
                for entry in pending:
                    entry.cancel_event.set()
                    entry.state = TaskState.CANCELLED
                    self._entries.pop(entry.id, None)

        if not already_stopped:
            logger.info(f"Scheduler '{self._name}' stopping. Cancelled {len(pending)} pending task(s).")
        for entry in pending:
            self._emit(self._on_task_cancelled, entry.id)

        worker = self._worker
        if wait and worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until no task is queued or running.

        Returns:
            True if the scheduler became idle, False if the timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                if self._active_entry is None and len(self._lanes) == 0:
                    return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)

    # --- Worker ---

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._stop_event.is_set():
                return
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run_worker, name=self._name, daemon=True)
            self._worker.start()
            logger.debug(f"Worker thread '{self._name}' started.")

    def _run_worker(self) -> None:
        """Thread target: runs the processing loop in a fresh event loop."""
        try:
            asyncio.run(self._process_queue())
        except Exception:
            logger.exception(f"Scheduler worker '{self._name}' terminated unexpectedly.")
        finally:
            logger.debug(f"Worker thread '{self._name}' exited.")

    async def _process_queue(self) -> None:
        while not self._stop_event.is_set():
            with self._lock:
                entry = self._lanes.pop()
                self._active_entry = entry
            if entry is None:
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                await self._run_entry(entry)
            finally:
                with self._lock:
                    self._active_entry = None

    async def _run_entry(self, entry: ScheduledEntry) -> None:
        if entry.state.is_terminal:
            logger.debug(f"Skipping cancelled task {entry.id}.")
            return

        if not await self._wait_until_due(entry):
            # Cancelled (or scheduler stopped) while waiting; cancel/stop already reported it.
            self._finish(entry, TaskState.CANCELLED)
            return

        with self._lock:
            if entry.state.is_terminal:
                return
            entry.state = TaskState.RUNNING

        logger.info(f"Executing task {entry.id}: '{entry.task.description}' (priority {entry.priority.name}).")
        try:
            await entry.task.execute(lambda info: self._report_progress(entry, info))
        except TaskCancelledError:
            logger.info(f"Task {entry.id} was cancelled while running.")
            self._finish(entry, TaskState.CANCELLED)
        except Exception as e:
            logger.exception(f"Task {entry.id} ('{entry.task.description}') failed: {e}")
            self._finish(entry, TaskState.FAILED, e)
        else:
            logger.info(f"Task {entry.id} completed.")
            self._finish(entry, TaskState.COMPLETED)

    async def _wait_until_due(self, entry: ScheduledEntry) -> bool:
        """Sleeps until the entry's scheduled time. Returns False if cancelled meanwhile."""
        while True:
            if entry.cancel_event.is_set() or self._stop_event.is_set():
                return False
            remaining = entry.seconds_until_due()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(remaining, self.poll_interval))

    def _report_progress(self, entry: ScheduledEntry, info: ProgressInfo) -> None:
        """Progress callback handed to running tasks; doubles as the cancellation checkpoint."""
        if entry.cancel_event.is_set():
            raise TaskCancelledError(f"Task '{entry.task.description}' was cancelled.")
        self._emit(self._on_progress, entry.id, info)

    def _finish(self, entry: ScheduledEntry, state: TaskState, error: Optional[Exception] = None) -> None:
        with self._lock:
            if entry.state.is_terminal:
                return
            entry.state = state
            self._entries.pop(entry.id, None)

        if state == TaskState.COMPLETED:
            self._emit(self._on_task_completed, entry.id)
        elif state == TaskState.CANCELLED:
            self._emit(self._on_task_cancelled, entry.id)
        elif state == TaskState.FAILED:
            self._emit(self._on_task_failed, entry.id, error)

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Scheduler event handler {getattr(callback, '__name__', callback)!r} raised an exception.")
