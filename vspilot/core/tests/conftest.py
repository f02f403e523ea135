# vspilot/core/tests/conftest.py
import threading
from typing import List, Optional

import pytest

from vspilot.core.config_manager import VSPilotSettings
from vspilot.core.performance_monitor import performance_monitor
from vspilot.core.project_models import BuildState, ErrorItem, TestOutcome, TestResult
from vspilot.core.workspace import Workspace


class FakeWorkspace(Workspace):
    """
    In-memory workspace. Each build consumes the next scripted outcome
    (True = success); once the script is exhausted the last outcome repeats.
    Builds and cleans stay IN_PROGRESS for `polls_per_build` state polls;
    `hold_build` keeps a started build running until it is cancelled.
    """
    def __init__(self, outcomes: Optional[List[bool]] = None, projects: Optional[List[str]] = None,
                 is_open: bool = True, polls_per_build: int = 1,
                 diagnostics: Optional[List[ErrorItem]] = None,
                 test_results: Optional[List[TestResult]] = None):
        self.outcomes = list(outcomes or [True])
        self.projects = projects or ["App", "App.Tests"]
        self._open = is_open
        self.polls_per_build = polls_per_build
        self.diagnostics = diagnostics if diagnostics is not None else [
            ErrorItem(description="CS0103: The name 'foo' does not exist", file_path="src/app.cs", line=3, column=5)
        ]
        self.test_results = test_results if test_results is not None else [
            TestResult(name="test_one", outcome=TestOutcome.PASSED)
        ]
        self.save_count = 0
        self.clean_count = 0
        self.build_count = 0
        self.cancel_count = 0
        self.built_projects: List[Optional[str]] = []
        self.build_started = threading.Event()
        self.hold_build = False

        self._state = BuildState.IDLE
        self._remaining_polls = 0
        self._succeeded = 0
        self._failed = 0
        self._pending_success = True
        self._units = len(self.projects)

    def is_open(self) -> bool:
        return self._open

    def save_all(self) -> None:
        self.save_count += 1

    def start_clean(self) -> None:
        self.clean_count += 1
        self._state = BuildState.IN_PROGRESS
        self._remaining_polls = self.polls_per_build
        self._pending_success = None

    def start_build(self, project_name: Optional[str] = None) -> None:
        index = min(self.build_count, len(self.outcomes) - 1)
        self.build_count += 1
        self.built_projects.append(project_name)
        self._pending_success = self.outcomes[index]
        self._units = 1 if project_name else len(self.projects)
        self._succeeded = 0
        self._failed = 0
        self._state = BuildState.IN_PROGRESS
        self._remaining_polls = self.polls_per_build
        self.build_started.set()

    def cancel(self) -> None:
        self.cancel_count += 1
        self._state = BuildState.DONE

    def get_build_state(self) -> BuildState:
        held = self.hold_build and self._pending_success is not None
        if self._state == BuildState.IN_PROGRESS and not held:
            if self._remaining_polls <= 0:
                self._finish()
            else:
                self._remaining_polls -= 1
        return self._state

    def _finish(self) -> None:
        self._state = BuildState.DONE
        if self._pending_success is None:
            return
        if self._pending_success:
            self._succeeded = self._units
        else:
            self._succeeded = self._units - 1
            self._failed = 1

    def get_project_names(self) -> List[str]:
        return list(self.projects)

    def get_total_unit_count(self) -> int:
        return self._units

    def get_succeeded_unit_count(self) -> int:
        return self._succeeded

    def get_failed_unit_count(self) -> int:
        return self._failed

    def get_diagnostics(self) -> List[ErrorItem]:
        return list(self.diagnostics) if self._failed else []

    def get_project_files(self, project_name: Optional[str] = None) -> List[str]:
        return ["src/app.cs"]

    def run_tests(self) -> List[TestResult]:
        return list(self.test_results)


@pytest.fixture
def settings() -> VSPilotSettings:
    """Default settings with fast polling for tests."""
    return VSPilotSettings(scheduler_poll_interval=0.01, build_poll_interval=0.001)


@pytest.fixture
def workspace_factory():
    """Returns the FakeWorkspace class so tests can script build outcomes."""
    return FakeWorkspace


@pytest.fixture
def fake_workspace() -> FakeWorkspace:
    return FakeWorkspace()


@pytest.fixture(autouse=True)
def reset_performance_monitor():
    performance_monitor.reset()
    yield
    performance_monitor.reset()
