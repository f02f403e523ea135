# vspilot/core/workspace.py
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from .command_executor import CommandExecutor
from .exceptions import CommandExecutionError, TaskCancelledError, WorkspaceError
from .file_system_manager import FileSystemManager
from .project_models import BuildState, CommandOutput, ErrorItem, TestOutcome, TestResult

logger = logging.getLogger(__name__)


class Workspace(ABC):
    """
    The host IDE's project model, as seen by the build orchestrator.

    `start_clean` and `start_build` only *start* the operation: they must put the
    workspace into `BuildState.IN_PROGRESS` before returning, and the
    orchestrator then polls `get_build_state` until it leaves that state.
    """

    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def save_all(self) -> None: ...

    def save_project(self, project_name: str) -> None:
        self.save_all()

    @abstractmethod
    def start_clean(self) -> None: ...

    @abstractmethod
    def start_build(self, project_name: Optional[str] = None) -> None: ...

    def cancel(self) -> None:
        """Stops a running clean or build, if the host supports it."""
        logger.debug("Workspace does not support cancelling a build.")

    @abstractmethod
    def get_build_state(self) -> BuildState: ...

    @abstractmethod
    def get_project_names(self) -> List[str]: ...

    def get_total_unit_count(self) -> int:
        """Number of build units in the current build. Defaults to the number of projects."""
        return max(1, len(self.get_project_names()))

    @abstractmethod
    def get_succeeded_unit_count(self) -> int: ...

    @abstractmethod
    def get_failed_unit_count(self) -> int: ...

    @abstractmethod
    def get_diagnostics(self) -> List[ErrorItem]: ...

    @abstractmethod
    def get_project_files(self, project_name: Optional[str] = None) -> List[str]: ...

    @abstractmethod
    def run_tests(self) -> List[TestResult]: ...


# --- Diagnostic parsing ---

# MSBuild / dotnet / tsc: "src/Foo.cs(12,5): error CS1002: ; expected [proj.csproj]"
MSBUILD_ERROR_PATTERN = re.compile(
    r"^\s*(?P<file>[^\s(][^(]*?)\((?P<line>\d+),(?P<col>\d+)\)\s*:\s*(?:fatal\s+)?error\s+(?P<code>[A-Za-z]+\d+)\s*:\s*(?P<msg>.+?)(?:\s+\[[^\]]*\])?\s*$"
)
# GCC / clang / mypy style: "src/foo.c:12:5: error: expected ';'"
GCC_ERROR_PATTERN = re.compile(
    r"^(?P<file>[^:\s][^:]*):(?P<line>\d+):(?:(?P<col>\d+):)?\s*(?:fatal\s+)?error:\s*(?P<msg>.+?)\s*$"
)
# Project-less errors: "error NU1101: Unable to find package Foo."
GENERIC_ERROR_PATTERN = re.compile(r"^\s*(?:[^:]+:\s*)?error\s+(?P<code>[A-Za-z]+\d+)\s*:\s*(?P<msg>.+?)(?:\s+\[[^\]]*\])?\s*$")

PYTEST_RESULT_PATTERN = re.compile(r"^(?P<name>\S+::\S+)\s+(?P<outcome>PASSED|FAILED|SKIPPED|ERROR|XFAIL|XPASS)\b")
DOTNET_RESULT_PATTERN = re.compile(r"^\s*(?P<outcome>Passed|Failed|Skipped)\s+(?P<name>\S+)")


def parse_diagnostics(output: str, project_root: Optional[Path] = None) -> List[ErrorItem]:
    """
    Extracts error diagnostics from build output. Duplicates (MSBuild repeats its
    errors in the summary) are reported once, in order of first appearance.
    """
    items: List[ErrorItem] = []
    seen = set()
    for raw_line in output.splitlines():
        line = raw_line.rstrip()
        item: Optional[ErrorItem] = None
        match = MSBUILD_ERROR_PATTERN.match(line)
        if match:
            item = ErrorItem(
                description=f"{match.group('code')}: {match.group('msg')}",
                file_path=_normalize_path(match.group("file"), project_root),
                line=int(match.group("line")),
                column=int(match.group("col")),
            )
        else:
            match = GCC_ERROR_PATTERN.match(line)
            if match:
                item = ErrorItem(
                    description=match.group("msg"),
                    file_path=_normalize_path(match.group("file"), project_root),
                    line=int(match.group("line")),
                    column=int(match.group("col") or 0),
                )
            else:
                match = GENERIC_ERROR_PATTERN.match(line)
                if match:
                    item = ErrorItem(description=f"{match.group('code')}: {match.group('msg')}")
        if item is not None:
            key = (item.description, item.file_path, item.line, item.column)
            if key not in seen:
                seen.add(key)
                items.append(item)
    return items


def _normalize_path(file_path: str, project_root: Optional[Path]) -> str:
    path = Path(file_path.strip())
    if project_root is not None and path.is_absolute():
        try:
            return path.resolve().relative_to(project_root).as_posix()
        except ValueError:
            return path.as_posix()
    return path.as_posix()


def parse_test_results(output: CommandOutput) -> List[TestResult]:
    """
    Parses per-test outcomes from pytest (`-v`) or `dotnet test` output. When no
    individual results are recognised, a single aggregate result based on the
    exit code is returned.
    """
    results: List[TestResult] = []
    text = "\n".join(part for part in (output.stdout, output.stderr) if part)
    for line in text.splitlines():
        match = PYTEST_RESULT_PATTERN.match(line)
        if match:
            outcome_text = match.group("outcome")
            if outcome_text in ("PASSED", "XFAIL", "XPASS"):
                outcome = TestOutcome.PASSED
            elif outcome_text == "SKIPPED":
                outcome = TestOutcome.SKIPPED
            else:
                outcome = TestOutcome.FAILED
            results.append(TestResult(name=match.group("name"), outcome=outcome,
                                      error_message=None if outcome != TestOutcome.FAILED else outcome_text))
            continue
        match = DOTNET_RESULT_PATTERN.match(line)
        if match:
            results.append(TestResult(name=match.group("name"), outcome=TestOutcome(match.group("outcome").lower())))

    if results:
        return results
    if not text.strip() and output.exit_code == 0:
        return []
    outcome = TestOutcome.PASSED if output.exit_code == 0 else TestOutcome.FAILED
    error_message = None if outcome == TestOutcome.PASSED else (output.stderr or output.stdout or f"Exit code {output.exit_code}")[:2000]
    return [TestResult(name=output.command, outcome=outcome, error_message=error_message)]


class ProcessWorkspace(Workspace):
    """
    A Workspace backed by command-line tools.

    Clean and build commands run on a background thread so that the
    orchestrator can monitor them like an IDE build. When the build command
    contains a `{project}` placeholder it is run once per project (one build
    unit each); otherwise it is run once and its outcome counts for every
    project of the build.
    """
    def __init__(self,
                 project_root: str | Path,
                 build_command: str,
                 clean_command: Optional[str] = None,
                 test_command: Optional[str] = None,
                 project_names: Optional[Sequence[str]] = None,
                 executor: Optional[CommandExecutor] = None,
                 file_manager: Optional[FileSystemManager] = None,
                 command_timeout: Optional[float] = None):
        if not build_command or not build_command.strip():
            raise ValueError("ProcessWorkspace requires a build command.")
        self.project_root = Path(project_root).resolve()
        self.build_command = build_command
        self.clean_command = clean_command
        self.test_command = test_command
        self.project_names = list(project_names) if project_names else [self.project_root.name]
        self.executor = executor or CommandExecutor(self.project_root)
        self.file_manager = file_manager or FileSystemManager(self.project_root)
        self.command_timeout = command_timeout

        self._state = BuildState.IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._units: List[str] = []
        self._succeeded = 0
        self._failed = 0
        self._diagnostics: List[ErrorItem] = []
        self._last_outputs: List[CommandOutput] = []

    # --- State ---

    def is_open(self) -> bool:
        return self.project_root.is_dir()

    def save_all(self) -> None:
        # Files are written straight to disk by the FileSystemManager; nothing is buffered.
        logger.debug("save_all: no unsaved documents in a process workspace.")

    def get_build_state(self) -> BuildState:
        with self._state_lock:
            return self._state

    def get_project_names(self) -> List[str]:
        return list(self.project_names)

    def get_total_unit_count(self) -> int:
        with self._state_lock:
            return max(1, len(self._units) or len(self.project_names))

    def get_succeeded_unit_count(self) -> int:
        with self._state_lock:
            return self._succeeded

    def get_failed_unit_count(self) -> int:
        with self._state_lock:
            return self._failed

    def get_diagnostics(self) -> List[ErrorItem]:
        with self._state_lock:
            return list(self._diagnostics)

    @property
    def last_outputs(self) -> List[CommandOutput]:
        with self._state_lock:
            return list(self._last_outputs)

    def get_project_files(self, project_name: Optional[str] = None) -> List[str]:
        # A single-project workspace has no per-project folders.
        if project_name and len(self.project_names) > 1 and (self.project_root / project_name).is_dir():
            return self.file_manager.list_files(project_name)
        return self.file_manager.list_files()

    def cancel(self) -> None:
        """Stops a running clean or build."""
        self._stop_event.set()

    # --- Operations ---

    def start_clean(self) -> None:
        if not self.clean_command:
            logger.debug("No clean command configured; clean is a no-op.")
            return
        self._start_background("clean", [(None, self.clean_command)], track_units=False)

    def start_build(self, project_name: Optional[str] = None) -> None:
        if project_name is not None and project_name not in self.project_names:
            raise WorkspaceError(f"Unknown project '{project_name}'.")
        units = [project_name] if project_name else list(self.project_names)
        if "{project}" in self.build_command:
            steps = [(unit, self.build_command.replace("{project}", unit)) for unit in units]
        else:
            steps = [(None, self.build_command)]
        with self._state_lock:
            self._units = units
        self._start_background("build", steps, track_units=True)

    def _start_background(self, operation: str, steps, track_units: bool) -> None:
        with self._state_lock:
            if self._state == BuildState.IN_PROGRESS:
                raise WorkspaceError(f"Cannot start {operation}: another operation is in progress.")
            self._state = BuildState.IN_PROGRESS
            if track_units:
                self._succeeded = 0
                self._failed = 0
                self._diagnostics = []
                self._last_outputs = []
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run_steps, args=(operation, steps, track_units),
                                        name=f"vspilot-{operation}", daemon=True)
        self._worker.start()

    def _run_steps(self, operation: str, steps, track_units: bool) -> None:
        try:
            for unit, command in steps:
                try:
                    output = self.executor.run_command(command, timeout=self.command_timeout, stop_event=self._stop_event)
                except TaskCancelledError:
                    logger.warning(f"{operation.capitalize()} cancelled.")
                    return
                except CommandExecutionError as e:
                    output = CommandOutput(command=command, stdout=e.stdout or "", stderr=e.stderr or e.message, exit_code=-1)
                if not track_units:
                    continue
                diagnostics = parse_diagnostics(f"{output.stdout}\n{output.stderr}", self.project_root)
                with self._state_lock:
                    self._last_outputs.append(output)
                    self._diagnostics.extend(diagnostics)
                    unit_count = 1 if unit is not None else len(self._units)
                    if output.exit_code == 0:
                        self._succeeded += unit_count
                    else:
                        self._failed += unit_count
                        if not diagnostics:
                            self._diagnostics.append(ErrorItem(description=(output.stderr or output.stdout or f"'{command}' exited with code {output.exit_code}")[:500]))
        except Exception:
            logger.exception(f"Unexpected error during {operation}.")
            with self._state_lock:
                if track_units:
                    self._failed = max(self._failed, 1)
        finally:
            with self._state_lock:
                self._state = BuildState.DONE

    def run_tests(self) -> List[TestResult]:
        if not self.test_command:
            logger.info("No test command configured.")
            return []
        try:
            output = self.executor.run_command(self.test_command, timeout=self.command_timeout)
        except CommandExecutionError as e:
            return [TestResult(name=self.test_command, outcome=TestOutcome.FAILED, error_message=e.message)]
        return parse_test_results(output)
