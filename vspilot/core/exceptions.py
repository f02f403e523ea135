# vspilot/core/exceptions.py
from typing import Optional

class CoreError(Exception):
    """Base exception for all custom errors raised within the VSPilot core modules."""
    pass

class TaskCancelledError(CoreError):
    """
    Raised inside a running automation task when its cancellation handle has been
    set, or when the scheduler is stopped while the task is waiting to run.

    The scheduler converts this exception into its "task cancelled" event, and the
    build orchestrator converts it into a `Cancelled` build status.
    """
    pass

class WorkspaceError(CoreError):
    """
    Raised by a Workspace implementation when the host project model cannot
    service a request (e.g., a build command could not be started).
    """
    pass

class ProviderError(CoreError):
    """
    Raised by the AIProviderRouter when the selected provider fails at the
    transport level (network failure, rate limit, rejected credentials).

    The router never retries against a different provider mid-call; the caller
    decides whether to try again.
    """
    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

# Specific LLM client exceptions (RateLimitError, AuthenticationError) are in llm_client.py
class CommandExecutionError(RuntimeError):
    """
    Raised when a command executed via CommandExecutor cannot be run to completion.

    Carries the captured output streams and exit code so the workspace can still
    report diagnostics for the failed step.
    """
    def __init__(self, message: str, stdout: Optional[str] = None, stderr: Optional[str] = None, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code

class PatchApplyError(CoreError):
    """
    Raised by a fix applier when a suggested fix cannot be written into the
    target file (e.g., the reported line no longer exists).
    """
    pass

class RemediationError(CoreError):
    """
    Raised by the RemediationManager when a repair attempt cannot proceed at all,
    as opposed to individual fixes failing (which are logged and skipped).
    """
    pass
