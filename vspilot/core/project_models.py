# vspilot/core/project_models.py
import logging
from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# --- Scheduling Enums ---
class TaskPriority(IntEnum):
    """
    Priority lane of a scheduled entry. Higher values are always dequeued first;
    entries within the same lane run in FIFO order.
    """
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

class TaskState(str, Enum):
    """Lifecycle of a ScheduledEntry. Every entry ends in exactly one terminal state."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.CANCELLED, TaskState.FAILED)

# --- Build Enums ---
class BuildState(str, Enum):
    """The coarse build state reported by the host workspace."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    DONE = "done"

class OrchestratorState(str, Enum):
    """States of the build/repair state machine driven by the BuildOrchestrator."""
    IDLE = "idle"
    CLEANING = "cleaning"
    BUILDING = "building"
    MONITORING = "monitoring"
    REPAIRING = "repairing"
    TESTING = "testing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

class ErrorType(str, Enum):
    """Error categories recognised from diagnostic codes."""
    COMPILER = "Compiler Error"
    MSBUILD = "MSBuild Error"
    DOTNET_SDK = ".NET SDK Error"
    NUGET = "NuGet Error"
    THREADING = "Threading Error"
    UNKNOWN = "Unknown Error"

class TestOutcome(str, Enum):
    __test__ = False # Not a pytest test class.
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

# --- AI Provider Enums ---
class AIProvider(str, Enum):
    """
    The AI backends the router can select. `AUTO` is a selection mode rather than
    a real backend: it lets the router choose per request.
    """
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    COPILOT = "copilot"
    AUTO = "auto"

class RequestIntent(str, Enum):
    """Intent of a natural-language request, inferred from its leading verbs."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    ANALYZE = "analyze"
    TEST = "test"
    CHAT = "chat"


class ProgressInfo(BaseModel):
    """
    A single progress tick reported by a running automation task.
    """
    stage: str = ""
    progress: float = 0.0 # Percentage, clamped to 0-100.
    detail: Optional[str] = None
    is_complete: bool = False
    has_error: bool = False
    error_message: Optional[str] = None

    @field_validator("progress")
    @classmethod
    def clamp_progress(cls, value: float) -> float:
        """Keeps the percentage within 0-100 so that callers can pass raw ratios * 100."""
        return max(0.0, min(100.0, float(value)))

    @classmethod
    def error(cls, message: str, stage: str = "Error") -> "ProgressInfo":
        """Creates a progress tick describing a failure."""
        return cls(stage=stage, progress=0.0, has_error=True, error_message=message)


class BuildStatus(BaseModel):
    """
    Immutable snapshot of a build attempt. A new snapshot is created for every
    state change; readers never observe a partially updated status.
    """
    model_config = ConfigDict(frozen=True)

    is_successful: bool = False
    is_building: bool = False
    succeeded_units: int = 0
    failed_units: int = 0
    error_message: Optional[str] = None
    build_start_time: Optional[datetime] = None
    current_step: str = "Idle"
    configuration: str = "Debug"

    def evolve(self, **changes) -> "BuildStatus":
        """Returns a copy of this status with the given fields replaced."""
        return self.model_copy(update=changes)


class BuildCompletedInfo(BaseModel):
    """Payload of the orchestrator's build-completed event."""
    is_successful: bool
    summary: str
    status: BuildStatus


class ErrorItem(BaseModel):
    """A single diagnostic reported by the workspace after a failed build."""
    model_config = ConfigDict(frozen=True)

    description: str
    file_path: Optional[str] = None
    line: int = 0
    column: int = 0

    @property
    def location(self) -> str:
        if not self.file_path:
            return "<unknown>"
        return f"{self.file_path}({self.line},{self.column})"


class ErrorAnalysis(BaseModel):
    """Structured analysis of an ErrorItem used to build repair prompts."""
    error_type: ErrorType = ErrorType.UNKNOWN
    probable_cause: str = ""
    suggested_fix: str = ""
    additional_context: str = ""
    can_auto_fix: bool = False
    related_files: List[str] = Field(default_factory=list)
    required_references: List[str] = Field(default_factory=list)


class TestResult(BaseModel):
    """The outcome of a single test reported by the workspace."""
    __test__ = False

    name: str
    outcome: TestOutcome
    error_message: Optional[str] = None
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome == TestOutcome.PASSED


class CommandOutput(BaseModel):
    """Captured result of a command run by the CommandExecutor."""
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
