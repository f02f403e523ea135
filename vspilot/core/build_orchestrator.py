# vspilot/core/build_orchestrator.py
import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, List, Optional

from .config_manager import VSPilotSettings
from .exceptions import TaskCancelledError
from .metrics_tracker import MetricsTracker
from .performance_monitor import time_function
from .project_models import (
    BuildCompletedInfo,
    BuildState,
    BuildStatus,
    OrchestratorState,
    ProgressInfo,
    TestOutcome,
    TestResult,
)
from .remediation_manager import RemediationManager
from .workspace import Workspace

logger = logging.getLogger(__name__)

NO_WORKSPACE_MESSAGE = "No solution is currently open"

# --- Callback type hints ---
BuildProgressCallable = Callable[[float, str], None]
BuildCompletedCallable = Callable[[BuildCompletedInfo], None]
StateChangedCallable = Callable[[OrchestratorState], None]
ProgressCallback = Callable[[ProgressInfo], None]


class BuildOrchestrator:
    """
    Drives clean, build, monitor and the bounded AI-assisted repair loop.

    A solution build walks through:
        IDLE -> CLEANING -> BUILDING -> MONITORING -> SUCCEEDED
    and, when the build fails and automatic fixing is enabled, up to
    `max_repair_attempts` extra cycles of
        REPAIRING -> CLEANING -> BUILDING -> MONITORING
    before ending in SUCCEEDED or FAILED (or CANCELLED).

    Cancellation is observed at every progress report: either through the
    `cancel_event` passed by a direct caller or through the scheduler's progress
    callback, which raises TaskCancelledError once its entry is cancelled.
    """
    def __init__(self,
                 workspace: Workspace,
                 remediation: Optional[RemediationManager] = None,
                 settings: Optional[VSPilotSettings] = None,
                 poll_interval: Optional[float] = None,
                 on_build_progress: Optional[BuildProgressCallable] = None,
                 on_build_completed: Optional[BuildCompletedCallable] = None,
                 on_state_changed: Optional[StateChangedCallable] = None,
                 metrics: Optional[MetricsTracker] = None):
        """
        Args:
            workspace: The host project model. Required.
            remediation: Produces and applies fixes during the repair loop. Without
                it, repair attempts only rebuild.
            settings: Supplies `auto_fix_errors`, `max_auto_fix_attempts` and the poll interval.
            poll_interval: Seconds between build-state polls; overrides the settings.
            on_build_progress: Called with (percent, operation) while monitoring a build.
            on_build_completed: Called with a BuildCompletedInfo when a build finishes.
            on_state_changed: Called with each new OrchestratorState.
            metrics: Optional JSONL recorder for build outcomes.

        Raises:
            ValueError: If no workspace is given.
        """
        if workspace is None:
            raise ValueError("BuildOrchestrator requires a workspace.")
        self.workspace = workspace
        self.remediation = remediation
        self.settings = settings or VSPilotSettings()
        self.poll_interval = poll_interval if poll_interval is not None else self.settings.build_poll_interval
        self.on_build_progress = on_build_progress
        self.on_build_completed = on_build_completed
        self.on_state_changed = on_state_changed
        self.metrics = metrics

        self._status = BuildStatus()
        self._status_lock = threading.Lock()
        self._build_lock = threading.Lock()
        self.state = OrchestratorState.IDLE
        self.state_history: List[OrchestratorState] = []
        self.repair_attempts = 0
        self.last_test_results: List[TestResult] = []

    @property
    def max_repair_attempts(self) -> int:
        return self.settings.max_auto_fix_attempts

    # --- Status ---

    def get_build_status(self) -> BuildStatus:
        """Returns the latest status snapshot. Safe to call while a build runs."""
        with self._status_lock:
            return self._status

    def _replace_status(self, status: BuildStatus) -> None:
        with self._status_lock:
            self._status = status

    def _update_status(self, **changes: Any) -> BuildStatus:
        with self._status_lock:
            self._status = self._status.evolve(**changes)
            return self._status

    def _set_state(self, state: OrchestratorState) -> None:
        self.state = state
        self.state_history.append(state)
        logger.debug(f"Build orchestrator state: {state.value}")
        self._emit(self.on_state_changed, state)

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Build event handler {getattr(callback, '__name__', callback)!r} raised an exception.")

    # --- Progress & cancellation ---

    def _report(self, cancel_event: Optional[threading.Event], progress_callback: Optional[ProgressCallback],
                stage: str, percent: float, detail: Optional[str] = None) -> None:
        """Publishes progress. Raises TaskCancelledError if the operation has been cancelled."""
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelledError(f"Build operation cancelled during '{stage}'.")
        if progress_callback is not None:
            progress_callback(ProgressInfo(stage=stage, progress=percent, detail=detail))
        self._emit(self.on_build_progress, percent, detail or stage)

    async def _wait_while_in_progress(self, cancel_event, progress_callback, stage: str) -> None:
        """Polls until the workspace is no longer building or cleaning."""
        while self.workspace.get_build_state() == BuildState.IN_PROGRESS:
            self._report(cancel_event, progress_callback, stage, 0, "Waiting for the current build operation to finish...")
            await asyncio.sleep(self.poll_interval)

    async def _monitor_build(self, cancel_event, progress_callback) -> None:
        """Polls the running build, publishing completed/total units as progress."""
        self._set_state(OrchestratorState.MONITORING)
        while True:
            in_progress = self.workspace.get_build_state() == BuildState.IN_PROGRESS
            succeeded = self.workspace.get_succeeded_unit_count()
            failed = self.workspace.get_failed_unit_count()
            total = max(1, self.workspace.get_total_unit_count())
            done = succeeded + failed
            self._update_status(succeeded_units=succeeded, failed_units=failed)
            if not in_progress:
                break
            percent = min(100.0, done / total * 100)
            self._report(cancel_event, progress_callback, "Building", percent, f"Building... ({done}/{total} projects)")
            await asyncio.sleep(self.poll_interval)

    async def _clean(self, cancel_event, progress_callback) -> None:
        self._set_state(OrchestratorState.CLEANING)
        self._update_status(current_step="Cleaning")
        self._report(cancel_event, progress_callback, "Cleaning", 0, "Cleaning solution...")
        await self._wait_while_in_progress(cancel_event, progress_callback, "Cleaning")
        self.workspace.start_clean()
        await self._wait_while_in_progress(cancel_event, progress_callback, "Cleaning")

    async def _build_once(self, cancel_event, progress_callback, project_name: Optional[str] = None) -> bool:
        """Starts one build, monitors it to completion and returns whether it succeeded."""
        self._set_state(OrchestratorState.BUILDING)
        self._update_status(current_step="Building")
        await self._wait_while_in_progress(cancel_event, progress_callback, "Building")
        self.workspace.start_build(project_name)
        await self._monitor_build(cancel_event, progress_callback)
        status = self.get_build_status()
        success = status.failed_units == 0
        logger.info(f"Build finished: {status.succeeded_units} succeeded, {status.failed_units} failed.")
        return success

    # --- Public operations ---

    @time_function
    async def build_solution(self, cancel_event: Optional[threading.Event] = None,
                             progress_callback: Optional[ProgressCallback] = None) -> bool:
        """
        Saves, cleans and builds the whole solution, then repairs and rebuilds
        until it succeeds or the repair budget is exhausted.

        Args:
            cancel_event: Optional cancellation signal for direct callers.
            progress_callback: Receives ProgressInfo ticks; may raise TaskCancelledError.

        Returns:
            True if the final build succeeded. False when no solution is open,
            another build is running, the repair budget is exhausted, or an
            unexpected error occurred (details in `get_build_status()`).

        Raises:
            TaskCancelledError: If the build was cancelled.
        """
        if not self.workspace.is_open():
            logger.warning("Build requested but no solution is open.")
            self._replace_status(BuildStatus(is_successful=False, error_message=NO_WORKSPACE_MESSAGE, current_step="Failed"))
            return False
        if not self._build_lock.acquire(blocking=False):
            logger.warning("Build requested while another build is running. Ignoring request.")
            return False
        try:
            return await self._run_solution_build(cancel_event, progress_callback)
        finally:
            self._build_lock.release()

    async def _run_solution_build(self, cancel_event, progress_callback) -> bool:
        self.state_history = []
        self.repair_attempts = 0
        self._replace_status(BuildStatus(is_building=True, build_start_time=datetime.now(),
                                         current_step="Starting", configuration=self.get_build_status().configuration))
        try:
            self._report(cancel_event, progress_callback, "Saving", 0, "Saving all documents...")
            self.workspace.save_all()
            await self._clean(cancel_event, progress_callback)
            success = await self._build_once(cancel_event, progress_callback)

            while not success and self.settings.auto_fix_errors and self.repair_attempts < self.max_repair_attempts:
                self.repair_attempts += 1
                attempt = self.repair_attempts
                self._set_state(OrchestratorState.REPAIRING)
                self._update_status(current_step=f"Repairing (attempt {attempt}/{self.max_repair_attempts})")
                errors = self.workspace.get_diagnostics()
                logger.info(f"Build failed with {len(errors)} error(s). Repair attempt {attempt}/{self.max_repair_attempts}.")
                self._report(cancel_event, progress_callback, "Repairing", 0, f"Fixing {len(errors)} error(s), attempt {attempt}")
                if self.remediation is not None:
                    await self.remediation.repair_errors(
                        errors, attempt=attempt, cancel_event=cancel_event,
                        checkpoint=lambda: self._report(cancel_event, progress_callback, "Repairing", 0, None),
                    )
                else:
                    logger.warning("No remediation manager configured; rebuilding without applying fixes.")
                await self._clean(cancel_event, progress_callback)
                success = await self._build_once(cancel_event, progress_callback)

            return self._complete(success)
        except TaskCancelledError:
            logger.warning("Build cancelled.")
            self._cancel_workspace_build()
            self._update_status(is_building=False, is_successful=False, current_step="Cancelled", error_message="Build cancelled.")
            self._set_state(OrchestratorState.CANCELLED)
            raise
        except Exception as e:
            logger.exception(f"Build failed with an unexpected error: {e}")
            self._update_status(is_building=False, is_successful=False, current_step="Failed", error_message=str(e))
            self._set_state(OrchestratorState.FAILED)
            self._emit(self.on_build_completed, BuildCompletedInfo(
                is_successful=False, summary=f"Build failed: {e}", status=self.get_build_status()))
            return False

    def _complete(self, success: bool) -> bool:
        status = self.get_build_status()
        summary = (f"Build {'succeeded' if success else 'failed'}. "
                   f"Successful projects: {status.succeeded_units}, Failed projects: {status.failed_units}")
        error_message = None
        if not success:
            error_message = summary
            if self.repair_attempts:
                error_message = f"{summary} (after {self.repair_attempts} repair attempt(s))"
        status = self._update_status(is_building=False, is_successful=success,
                                     current_step="Completed" if success else "Failed", error_message=error_message)
        self._set_state(OrchestratorState.SUCCEEDED if success else OrchestratorState.FAILED)
        logger.info(summary)
        self._record_metrics(status)
        self._emit(self.on_build_completed, BuildCompletedInfo(is_successful=success, summary=summary, status=status))
        return success

    def _cancel_workspace_build(self) -> None:
        try:
            self.workspace.cancel()
        except Exception:
            logger.exception("Failed to stop the workspace build after cancellation.")

    def _record_metrics(self, status: BuildStatus) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.log_remediation_event({
                "event": "build_completed",
                "is_successful": status.is_successful,
                "repair_attempts": self.repair_attempts,
                "succeeded_units": status.succeeded_units,
                "failed_units": status.failed_units,
            })
        except OSError as e:
            logger.warning(f"Could not write build metrics: {e}")

    async def build_project(self, project_name: str, cancel_event: Optional[threading.Event] = None,
                            progress_callback: Optional[ProgressCallback] = None) -> bool:
        """
        Saves and builds a single project, without cleaning and without repair.

        Returns:
            True if the project built successfully; False if no solution is open,
            the project does not exist, another build is running, or the build failed.

        Raises:
            TaskCancelledError: If the build was cancelled.
        """
        if not self.workspace.is_open():
            logger.warning("Project build requested but no solution is open.")
            self._replace_status(BuildStatus(is_successful=False, error_message=NO_WORKSPACE_MESSAGE, current_step="Failed"))
            return False
        matches = [name for name in self.workspace.get_project_names() if name.lower() == (project_name or "").lower()]
        if not matches:
            logger.error(f"Project not found: {project_name}")
            self._replace_status(BuildStatus(is_successful=False, error_message=f"Project '{project_name}' not found.", current_step="Failed"))
            return False
        if not self._build_lock.acquire(blocking=False):
            logger.warning("Project build requested while another build is running. Ignoring request.")
            return False
        try:
            self.state_history = []
            self.repair_attempts = 0
            self._replace_status(BuildStatus(is_building=True, build_start_time=datetime.now(), current_step="Starting"))
            try:
                self._report(cancel_event, progress_callback, "Saving", 0, f"Saving project {matches[0]}...")
                self.workspace.save_project(matches[0])
                success = await self._build_once(cancel_event, progress_callback, project_name=matches[0])
                return self._complete(success)
            except TaskCancelledError:
                self._cancel_workspace_build()
                self._update_status(is_building=False, is_successful=False, current_step="Cancelled", error_message="Build cancelled.")
                self._set_state(OrchestratorState.CANCELLED)
                raise
            except Exception as e:
                logger.exception(f"Failed to build project {project_name}: {e}")
                self._update_status(is_building=False, is_successful=False, current_step="Failed", error_message=str(e))
                self._set_state(OrchestratorState.FAILED)
                return False
        finally:
            self._build_lock.release()

    async def clean_solution(self, cancel_event: Optional[threading.Event] = None,
                             progress_callback: Optional[ProgressCallback] = None) -> None:
        """Cleans the solution and waits for the clean to finish. Does nothing when no solution is open."""
        if not self.workspace.is_open():
            logger.info("Clean requested but no solution is open.")
            return
        if not self._build_lock.acquire(blocking=False):
            logger.warning("Clean requested while a build is running. Ignoring request.")
            return
        try:
            await self._clean(cancel_event, progress_callback)
            self._update_status(current_step="Cleaned")
            self._set_state(OrchestratorState.IDLE)
        finally:
            self._build_lock.release()

    async def run_tests(self, cancel_event: Optional[threading.Event] = None,
                        progress_callback: Optional[ProgressCallback] = None) -> bool:
        """
        Runs the workspace's tests.

        Returns:
            True if at least one test ran and none failed.

        Raises:
            TaskCancelledError: If cancelled before the results were evaluated.
        """
        if not self.workspace.is_open():
            logger.warning("Test run requested but no solution is open.")
            return False
        self._set_state(OrchestratorState.TESTING)
        self._report(cancel_event, progress_callback, "Testing", 0, "Running tests...")
        results = await asyncio.to_thread(self.workspace.run_tests)
        self._report(cancel_event, progress_callback, "Testing", 100, f"{len(results)} test(s) executed")
        self.last_test_results = list(results)

        if not results:
            logger.warning("No test results were reported.")
            self._set_state(OrchestratorState.FAILED)
            return False
        failures = [r for r in results if r.outcome == TestOutcome.FAILED]
        for failure in failures:
            logger.error(f"Test failed: {failure.name}: {failure.error_message or 'no details'}")
        passed = len([r for r in results if r.outcome == TestOutcome.PASSED])
        logger.info(f"Tests finished: {passed} passed, {len(failures)} failed, {len(results) - passed - len(failures)} skipped.")
        self._set_state(OrchestratorState.SUCCEEDED if not failures else OrchestratorState.FAILED)
        return not failures
