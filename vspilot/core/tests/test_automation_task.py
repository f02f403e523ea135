# vspilot/core/tests/test_automation_task.py
from typing import List

import pytest

from vspilot.core.automation_task import AutomationTask
from vspilot.core.project_models import ProgressInfo


class TestAutomationTask:

    def test_requires_callable_action(self):
        with pytest.raises(ValueError, match="requires a callable action"):
            AutomationTask("broken", "not callable")

    def test_ids(self):
        async def action(progress):
            pass

        generated = AutomationTask("a", action)
        explicit = AutomationTask("b", action, task_id="build-42")

        assert generated.id and generated.id != AutomationTask("a", action).id
        assert explicit.id == "build-42"
        assert repr(explicit) == "AutomationTask(id='build-42', description='b')"

    @pytest.mark.asyncio
    async def test_execute_brackets_action_with_start_and_complete(self):
        ticks: List[ProgressInfo] = []

        async def action(progress):
            progress(ProgressInfo(stage="Working", progress=50))

        await AutomationTask("Build solution", action).execute(ticks.append)

        assert [t.stage for t in ticks] == ["Starting", "Working", "Complete"]
        assert ticks[0].detail == "Build solution"
        assert ticks[0].progress == 0
        assert ticks[-1].progress == 100
        assert ticks[-1].is_complete

    @pytest.mark.asyncio
    async def test_failure_skips_completion_tick(self):
        ticks: List[ProgressInfo] = []

        async def action(progress):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await AutomationTask("failing", action).execute(ticks.append)
        assert [t.stage for t in ticks] == ["Starting"]
