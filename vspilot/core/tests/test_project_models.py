# vspilot/core/tests/test_project_models.py
import pytest
from pydantic import ValidationError

from vspilot.core.project_models import (
    BuildStatus,
    CommandOutput,
    ErrorItem,
    ProgressInfo,
    TaskPriority,
    TaskState,
    TestOutcome,
    TestResult,
)


class TestProgressInfo:

    @pytest.mark.parametrize("raw, expected", [(-5, 0.0), (42.5, 42.5), (150, 100.0)])
    def test_progress_is_clamped(self, raw, expected):
        assert ProgressInfo(stage="x", progress=raw).progress == expected

    def test_error_factory(self):
        info = ProgressInfo.error("Build failed")
        assert info.has_error
        assert info.error_message == "Build failed"
        assert info.stage == "Error"
        assert not info.is_complete


class TestBuildStatus:

    def test_status_is_immutable(self):
        status = BuildStatus()
        with pytest.raises(ValidationError):
            status.is_building = True

    def test_evolve_returns_new_snapshot(self):
        status = BuildStatus()
        building = status.evolve(is_building=True, current_step="Building")

        assert building.is_building
        assert building.current_step == "Building"
        assert not status.is_building
        assert status.current_step == "Idle"


class TestSchedulingEnums:

    def test_priority_order(self):
        assert TaskPriority.LOW < TaskPriority.NORMAL < TaskPriority.HIGH < TaskPriority.CRITICAL

    @pytest.mark.parametrize("state, terminal", [
        (TaskState.QUEUED, False),
        (TaskState.RUNNING, False),
        (TaskState.COMPLETED, True),
        (TaskState.CANCELLED, True),
        (TaskState.FAILED, True),
    ])
    def test_terminal_states(self, state: TaskState, terminal: bool):
        assert state.is_terminal is terminal


class TestResultModels:

    def test_error_item_location(self):
        assert ErrorItem(description="x", file_path="src/a.cs", line=3, column=7).location == "src/a.cs(3,7)"
        assert ErrorItem(description="x").location == "<unknown>"

    def test_test_result_passed(self):
        assert TestResult(name="a", outcome=TestOutcome.PASSED).passed
        assert not TestResult(name="b", outcome=TestOutcome.SKIPPED).passed

    def test_command_output_succeeded(self):
        assert CommandOutput(command="make").succeeded
        assert not CommandOutput(command="make", exit_code=2).succeeded
