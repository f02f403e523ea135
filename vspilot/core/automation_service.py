# vspilot/core/automation_service.py
import logging
import re
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from .ai_router import AIProviderRouter
from .automation_task import AutomationTask, ProgressCallback
from .build_orchestrator import BuildOrchestrator
from .config_manager import VSPilotSettings
from .exceptions import CoreError
from .project_models import ProgressInfo, RequestIntent, TaskPriority
from .task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)

EMPTY_REQUEST_MESSAGE = "Please provide a valid request."
REQUEST_ERROR_MESSAGE = "I encountered an error processing your request: {error}"

# Checked in order; the first group with a whole-word match decides the intent.
INTENT_KEYWORDS: Tuple[Tuple[RequestIntent, Tuple[str, ...]], ...] = (
    (RequestIntent.CREATE, ("create", "new", "add", "generate")),
    (RequestIntent.MODIFY, ("modify", "change", "update", "refactor", "rename", "move")),
    (RequestIntent.DELETE, ("delete", "remove", "clean")),
    (RequestIntent.ANALYZE, ("analyze", "check", "review", "find", "search")),
    (RequestIntent.TEST, ("test",)),
)
CODE_CHANGING_INTENTS = frozenset({RequestIntent.CREATE, RequestIntent.MODIFY, RequestIntent.DELETE})

ChatResponseCallable = Callable[[str], None]


def _keyword_pattern(keywords: Tuple[str, ...]) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE)


INTENT_PATTERNS = tuple((intent, _keyword_pattern(keywords)) for intent, keywords in INTENT_KEYWORDS)


async def answer_prompt(router: AIProviderRouter, prompt: str) -> str:
    """
    Answers a chat prompt through the AI router.

    Never raises for provider problems: failures are turned into a
    user-facing message instead.
    """
    if not prompt or not prompt.strip():
        return EMPTY_REQUEST_MESSAGE
    try:
        return await router.get_completion(prompt)
    except (CoreError, ValueError, RuntimeError) as e:
        logger.error(f"Chat request failed: {e}")
        return REQUEST_ERROR_MESSAGE.format(error=e)


class AutomationService:
    """
    Front door of the automation core.

    Wraps builds, test runs and chat requests into AutomationTasks and hands
    them to the TaskScheduler, so that every operation is serialised on the
    scheduler's single worker and can be cancelled through its entry id.
    Results of finished operations are available through `get_result`.
    """
    def __init__(self,
                 scheduler: TaskScheduler,
                 orchestrator: BuildOrchestrator,
                 router: AIProviderRouter,
                 settings: Optional[VSPilotSettings] = None):
        if scheduler is None or orchestrator is None or router is None:
            raise ValueError("AutomationService requires a scheduler, a build orchestrator and an AI router.")
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.router = router
        self.settings = settings or orchestrator.settings
        self._results: Dict[str, Any] = {}
        self._task_ids: Dict[str, str] = {}

    def _submit(self, description: str, action, priority: TaskPriority) -> str:
        task_id = str(uuid.uuid4())

        async def run(progress: ProgressCallback) -> None:
            self._results[task_id] = await action(progress)

        entry_id = self.scheduler.enqueue(AutomationTask(description, run, task_id=task_id), priority)
        self._task_ids[entry_id] = task_id
        logger.info(f"Submitted '{description}' as entry {entry_id} with priority {priority.name}.")
        return entry_id

    def get_result(self, entry_id: str) -> Optional[Any]:
        """Result of a finished operation (None while pending, or if it was cancelled or failed)."""
        task_id = self._task_ids.get(entry_id)
        return self._results.get(task_id) if task_id else None

    # --- Builds and tests ---

    def submit_build(self, priority: TaskPriority = TaskPriority.HIGH, run_tests: Optional[bool] = None) -> str:
        """
        Queues a full solution build (with repair). When the build succeeds and
        `run_tests` (default: the `auto_run_tests` setting) is on, the tests run
        in the same task. The stored result is the build outcome, or the test
        outcome when tests ran.
        """
        should_test = self.settings.auto_run_tests if run_tests is None else run_tests

        async def action(progress: ProgressCallback) -> bool:
            success = await self.orchestrator.build_solution(progress_callback=progress)
            if success and should_test:
                return await self.orchestrator.run_tests(progress_callback=progress)
            return success

        return self._submit("Build solution", action, priority)

    def submit_project_build(self, project_name: str, priority: TaskPriority = TaskPriority.HIGH) -> str:
        if not project_name or not project_name.strip():
            raise ValueError("Project name cannot be empty.")

        async def action(progress: ProgressCallback) -> bool:
            return await self.orchestrator.build_project(project_name, progress_callback=progress)

        return self._submit(f"Build project {project_name}", action, priority)

    def submit_tests(self, priority: TaskPriority = TaskPriority.NORMAL) -> str:
        async def action(progress: ProgressCallback) -> bool:
            return await self.orchestrator.run_tests(progress_callback=progress)

        return self._submit("Run tests", action, priority)

    # --- Chat ---

    async def get_chat_response(self, prompt: str) -> str:
        return await answer_prompt(self.router, prompt)

    def submit_chat(self, prompt: str, on_response: Optional[ChatResponseCallable] = None,
                    priority: TaskPriority = TaskPriority.NORMAL) -> str:
        """Queues a chat request; `on_response` receives the answer on the scheduler's worker thread."""
        async def action(progress: ProgressCallback) -> str:
            progress(ProgressInfo(stage="Thinking", progress=10, detail="Waiting for the AI provider..."))
            response = await self.get_chat_response(prompt)
            if on_response is not None:
                try:
                    on_response(response)
                except Exception:
                    logger.exception("Chat response handler raised an exception.")
            return response

        return self._submit("Chat request", action, priority)

    # --- Natural-language requests ---

    @staticmethod
    def analyze_request(request: str) -> RequestIntent:
        if not request:
            return RequestIntent.CHAT
        for intent, pattern in INTENT_PATTERNS:
            if pattern.search(request):
                return intent
        return RequestIntent.CHAT

    def process_request(self, request: str, on_response: Optional[ChatResponseCallable] = None,
                        priority: TaskPriority = TaskPriority.NORMAL) -> Dict[str, str]:
        """
        Routes a free-form request by intent.

        Test requests queue a test run. Everything else is answered through
        chat, and requests that change code are followed by a build when
        `auto_build_after_changes` is on.

        Returns:
            Entry ids of the queued operations, keyed by "chat", "build" or "tests".

        Raises:
            ValueError: If the request is empty.
        """
        if not request or not request.strip():
            raise ValueError("Request cannot be empty.")
        intent = self.analyze_request(request)
        logger.info(f"Request classified as '{intent.value}'.")
        submitted: Dict[str, str] = {}
        if intent == RequestIntent.TEST:
            submitted["tests"] = self.submit_tests(priority)
            return submitted
        submitted["chat"] = self.submit_chat(request, on_response, priority)
        if intent in CODE_CHANGING_INTENTS and self.settings.auto_build_after_changes:
            # Same lane as the chat, so FIFO order runs the change before the build.
            submitted["build"] = self.submit_build(priority=priority)
        return submitted

    # --- Analysis & lifecycle ---

    def queue_project_analysis(self, project_name: str) -> None:
        self.router.queue_analysis(project_name)

    def cancel(self, entry_id: str) -> bool:
        return self.scheduler.cancel(entry_id)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        return self.scheduler.wait_until_idle(timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        logger.info("Shutting down automation service.")
        self.scheduler.stop(wait=wait, timeout=timeout)
