# vspilot/core/tests/test_remediation_manager.py
import threading
from pathlib import Path

import pytest
from unittest.mock import AsyncMock, MagicMock

from vspilot.core.ai_router import FIX_UNAVAILABLE_MESSAGE
from vspilot.core.exceptions import PatchApplyError, RemediationError, TaskCancelledError
from vspilot.core.file_system_manager import FileSystemManager
from vspilot.core.metrics_tracker import MetricsTracker
from vspilot.core.project_models import ErrorItem, ErrorType
from vspilot.core.remediation_manager import (
    LineReplacementFixApplier,
    LoggingFixApplier,
    RemediationManager,
    clean_suggestion,
)

# --- Fixtures ---

@pytest.fixture
def router() -> MagicMock:
    mock = MagicMock()
    mock.get_error_fix = AsyncMock(return_value="int x = 0;")
    return mock


@pytest.fixture
def applier() -> MagicMock:
    mock = MagicMock()
    mock.apply_fix.return_value = True
    return mock


@pytest.fixture
def fs(tmp_path: Path) -> FileSystemManager:
    return FileSystemManager(tmp_path)


def error_at(line: int, file_path: str = "src/app.cs") -> ErrorItem:
    return ErrorItem(description=f"CS0103 at {line}", file_path=file_path, line=line, column=1)


# --- Test Cases ---

class TestCleanSuggestion:

    @pytest.mark.parametrize("suggestion, expected", [
        ("  int x = 0;  ", "int x = 0;"),
        ("```csharp\nint x = 0;\n```", "int x = 0;"),
        ("```\nfoo();\nbar();\n```", "foo();\nbar();"),
        ("int x = 0; // no fence", "int x = 0; // no fence"),
    ])
    def test_strips_code_fences(self, suggestion: str, expected: str):
        assert clean_suggestion(suggestion) == expected


class TestRepairErrors:

    def test_requires_router(self):
        with pytest.raises(ValueError, match="requires an AIProviderRouter"):
            RemediationManager(None)

    def test_default_applier_only_logs(self, router: MagicMock):
        manager = RemediationManager(router)
        assert isinstance(manager.fix_applier, LoggingFixApplier)

    @pytest.mark.asyncio
    async def test_errors_are_fixed_bottom_up_per_file(self, router: MagicMock, applier: MagicMock):
        errors = [error_at(2), error_at(10), error_at(1, "src/other.cs"), ErrorItem(description="no file"), error_at(5)]
        manager = RemediationManager(router, fix_applier=applier)

        applied = await manager.repair_errors(errors, attempt=1)

        assert applied == 5
        order = [(c.args[0].file_path, c.args[0].line) for c in applier.apply_fix.call_args_list]
        assert order == [
            ("src/app.cs", 10), ("src/app.cs", 5), ("src/app.cs", 2),
            ("src/other.cs", 1), (None, 0),
        ]

    @pytest.mark.asyncio
    async def test_context_lines_are_sent_to_router(self, router: MagicMock, applier: MagicMock, fs: FileSystemManager):
        fs.write_file("src/app.cs", "a\nb\nc\n")
        manager = RemediationManager(router, file_manager=fs, fix_applier=applier)

        await manager.repair_errors([error_at(2)])

        error, context = router.get_error_fix.await_args.args
        assert error.line == 2
        assert ">    2 | b" in context

    @pytest.mark.asyncio
    async def test_error_analysis_is_sent_to_router(self, router: MagicMock, applier: MagicMock):
        error = ErrorItem(description="CS0246: The type or namespace name 'Newtonsoft' could not be found",
                          file_path="src/app.cs", line=1)

        await RemediationManager(router, fix_applier=applier).repair_errors([error])

        analysis = router.get_error_fix.await_args.kwargs["analysis"]
        assert analysis.error_type == ErrorType.COMPILER
        assert analysis.required_references == ["Newtonsoft"]

    @pytest.mark.asyncio
    async def test_missing_context_is_sent_as_none(self, router: MagicMock, applier: MagicMock):
        await RemediationManager(router, fix_applier=applier).repair_errors([error_at(2)])
        assert router.get_error_fix.await_args.args[1] is None

    @pytest.mark.asyncio
    async def test_unavailable_fix_is_skipped(self, router: MagicMock, applier: MagicMock):
        router.get_error_fix.return_value = FIX_UNAVAILABLE_MESSAGE
        manager = RemediationManager(router, fix_applier=applier)

        assert await manager.repair_errors([error_at(1), error_at(2)]) == 0
        applier.apply_fix.assert_not_called()

    @pytest.mark.asyncio
    async def test_applier_failure_does_not_stop_other_fixes(self, router: MagicMock, applier: MagicMock):
        applier.apply_fix.side_effect = [PatchApplyError("line moved"), True]
        manager = RemediationManager(router, fix_applier=applier)

        assert await manager.repair_errors([error_at(1), error_at(2)]) == 1
        assert applier.apply_fix.call_count == 2

    @pytest.mark.asyncio
    async def test_unchanged_fix_is_not_counted(self, router: MagicMock, applier: MagicMock):
        applier.apply_fix.return_value = False
        assert await RemediationManager(router, fix_applier=applier).repair_errors([error_at(1)]) == 0

    @pytest.mark.asyncio
    async def test_none_errors_fails(self, router: MagicMock):
        with pytest.raises(RemediationError):
            await RemediationManager(router).repair_errors(None)

    @pytest.mark.asyncio
    async def test_cancel_event_stops_repair(self, router: MagicMock, applier: MagicMock):
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(TaskCancelledError):
            await RemediationManager(router, fix_applier=applier).repair_errors([error_at(1)], cancel_event=cancel_event)
        router.get_error_fix.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_checkpoint_can_cancel_between_errors(self, router: MagicMock, applier: MagicMock):
        checkpoint = MagicMock(side_effect=[None, TaskCancelledError("stop")])

        with pytest.raises(TaskCancelledError):
            await RemediationManager(router, fix_applier=applier).repair_errors(
                [error_at(1), error_at(2)], checkpoint=checkpoint)
        assert applier.apply_fix.call_count == 1

    @pytest.mark.asyncio
    async def test_fix_attempts_are_recorded(self, router: MagicMock, applier: MagicMock, tmp_path: Path):
        metrics = MetricsTracker(tmp_path / "metrics.jsonl")
        applier.apply_fix.side_effect = [PatchApplyError("bad line"), True]
        manager = RemediationManager(router, fix_applier=applier, metrics=metrics)

        await manager.repair_errors([error_at(1), error_at(9)], attempt=2)

        events = metrics.read_events()
        assert [e["event"] for e in events] == ["fix_attempt", "fix_attempt"]
        assert events[0]["line"] == 9
        assert events[0]["applied"] is False
        assert events[0]["reason"] == "bad line"
        assert events[1]["applied"] is True
        assert all(e["attempt"] == 2 for e in events)

    @pytest.mark.asyncio
    async def test_fix_errors_is_a_one_off_attempt(self, router: MagicMock, applier: MagicMock):
        manager = RemediationManager(router, fix_applier=applier)
        assert await manager.fix_errors([error_at(1)]) == 1


class TestLineReplacementFixApplier:

    @pytest.fixture
    def source(self, fs: FileSystemManager) -> FileSystemManager:
        fs.write_file("src/app.cs", "class A {\n    int x = foo;\n}\n")
        return fs

    def test_replaces_line_keeping_indentation(self, source: FileSystemManager):
        applier = LineReplacementFixApplier(source)

        assert applier.apply_fix(error_at(2), "```csharp\nint x = 0;\n```") is True

        assert source.read_file("src/app.cs") == "class A {\n    int x = 0;\n}\n"
        assert len(source.list_backups("src/app.cs")) == 1

    def test_multi_line_replacement(self, source: FileSystemManager):
        LineReplacementFixApplier(source).apply_fix(error_at(2), "int x = 0;\n    int y = 1;")
        assert source.read_file("src/app.cs") == "class A {\n    int x = 0;\n    int y = 1;\n}\n"

    def test_identical_line_is_not_rewritten(self, source: FileSystemManager):
        assert LineReplacementFixApplier(source).apply_fix(error_at(2), "int x = foo;") is False
        assert source.list_backups("src/app.cs") == []

    def test_empty_suggestion_is_skipped(self, source: FileSystemManager):
        assert LineReplacementFixApplier(source).apply_fix(error_at(2), "```\n```") is False

    def test_line_out_of_range_fails(self, source: FileSystemManager):
        with pytest.raises(PatchApplyError, match="does not exist"):
            LineReplacementFixApplier(source).apply_fix(error_at(40), "x")

    def test_error_without_location_fails(self, source: FileSystemManager):
        with pytest.raises(PatchApplyError, match="without a file and line"):
            LineReplacementFixApplier(source).apply_fix(ErrorItem(description="no file"), "x")
