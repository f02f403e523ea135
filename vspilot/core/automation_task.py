# vspilot/core/automation_task.py
import logging
import uuid
from typing import Awaitable, Callable, Optional

from .project_models import ProgressInfo

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressInfo], None]
TaskAction = Callable[[ProgressCallback], Awaitable[None]]


class AutomationTask:
    """
    A named unit of asynchronous automation work.

    The action is an async callable that receives a progress callback. It is
    expected to report progress through that callback periodically; the
    scheduler uses those calls as the points at which a cancelled task is
    interrupted (the callback raises `TaskCancelledError`).

    A task is treated as immutable once it has been enqueued.
    """
    def __init__(self, description: str, action: TaskAction, task_id: Optional[str] = None):
        """
        Args:
            description: Human-readable description, reported as the detail of the "Starting" tick.
            action: The async callable performing the work.
            task_id: Optional explicit identifier. A random UUID is used if omitted.

        Raises:
            ValueError: If the action is not callable.
        """
        if not callable(action):
            raise ValueError("AutomationTask requires a callable action.")
        self._id = task_id or str(uuid.uuid4())
        self._description = description or ""
        self._action = action

    @property
    def id(self) -> str:
        return self._id

    @property
    def description(self) -> str:
        return self._description

    async def execute(self, progress: ProgressCallback) -> None:
        """
        Runs the action, bracketing it with a "Starting" tick (0%) and a
        "Complete" tick (100%, is_complete=True).

        Exceptions raised by the action (including cancellation) propagate to the
        caller without emitting the completion tick.
        """
        progress(ProgressInfo(stage="Starting", progress=0, detail=self._description))
        await self._action(progress)
        progress(ProgressInfo(stage="Complete", progress=100, is_complete=True))

    def __repr__(self) -> str:
        return f"AutomationTask(id={self._id!r}, description={self._description!r})"
