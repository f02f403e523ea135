# vspilot/core/remediation_manager.py
import logging
import re
import threading
from typing import Callable, List, Optional, Protocol

from .ai_router import FIX_UNAVAILABLE_MESSAGE, AIProviderRouter
from .error_analyzer import ErrorAnalyzer
from .exceptions import PatchApplyError, RemediationError, TaskCancelledError
from .file_system_manager import FileSystemManager
from .metrics_tracker import MetricsTracker
from .project_models import ErrorItem

logger = logging.getLogger(__name__)

CODE_FENCE_PATTERN = re.compile(r"^```[\w+-]*\s*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)


class FixApplier(Protocol):
    """Hook that writes an AI-suggested fix into the code base."""
    def apply_fix(self, error: ErrorItem, suggestion: str) -> bool:
        """Returns True if the code base was changed."""
        ...


class LoggingFixApplier:
    """
    Default applier: records the suggestion without touching any file.

    Keeps the repair loop safe to run against real projects until an applier
    that edits sources is configured explicitly.
    """
    def __init__(self):
        self.suggestions: List[tuple] = []

    def apply_fix(self, error: ErrorItem, suggestion: str) -> bool:
        self.suggestions.append((error, suggestion))
        logger.info(f"Suggested fix for {error.location}: {suggestion!r} (not applied)")
        return False


def clean_suggestion(suggestion: str) -> str:
    """Strips a surrounding Markdown code fence from an AI answer."""
    text = suggestion.strip()
    match = CODE_FENCE_PATTERN.match(text)
    if match:
        text = match.group("body")
    return text.strip("\n")


class LineReplacementFixApplier:
    """
    Replaces the reported error line with the suggestion, keeping the line's
    original indentation. The file is backed up before every change.
    """
    def __init__(self, file_manager: FileSystemManager):
        self.file_manager = file_manager

    def apply_fix(self, error: ErrorItem, suggestion: str) -> bool:
        """
        Raises:
            PatchApplyError: If the error has no file/line or the line does not exist.
        """
        if not error.file_path or error.line <= 0:
            raise PatchApplyError(f"Cannot apply a line fix without a file and line: {error.location}")
        replacement = clean_suggestion(suggestion)
        if not replacement.strip():
            logger.warning(f"Empty fix suggested for {error.location}; skipping.")
            return False

        content = self.file_manager.read_file(error.file_path)
        lines = content.splitlines(keepends=True)
        if error.line > len(lines):
            raise PatchApplyError(f"Line {error.line} does not exist in '{error.file_path}' ({len(lines)} lines).")

        original = lines[error.line - 1]
        newline = original[len(original.rstrip("\r\n")):] or "\n"
        indent = original[:len(original) - len(original.lstrip())]
        new_lines = [indent + text.lstrip() if i == 0 else text for i, text in enumerate(replacement.splitlines())]
        new_text = newline.join(new_lines) + newline
        if new_text == original:
            logger.info(f"Suggested fix for {error.location} is identical to the current line.")
            return False

        lines[error.line - 1] = new_text
        self.file_manager.modify_file(error.file_path, "".join(lines))
        logger.info(f"Applied fix to {error.location}.")
        return True


class RemediationManager:
    """
    Runs the "suggest and apply" half of a repair attempt.

    For every diagnostic it asks the AI router for a fix (with the surrounding
    source lines as context) and hands the suggestion to the configured
    FixApplier. A failure to fix one error is logged and does not stop the
    others; cancellation stops the whole attempt.
    """
    def __init__(self,
                 router: AIProviderRouter,
                 file_manager: Optional[FileSystemManager] = None,
                 analyzer: Optional[ErrorAnalyzer] = None,
                 fix_applier: Optional[FixApplier] = None,
                 metrics: Optional[MetricsTracker] = None):
        if router is None:
            raise ValueError("RemediationManager requires an AIProviderRouter.")
        self.router = router
        self.file_manager = file_manager
        self.analyzer = analyzer or ErrorAnalyzer(file_manager)
        self.fix_applier: FixApplier = fix_applier or LoggingFixApplier()
        self.metrics = metrics

    @staticmethod
    def _ordered(errors: List[ErrorItem]) -> List[ErrorItem]:
        # Bottom-up within each file, so that multi-line fixes cannot shift later targets.
        grouped = ErrorAnalyzer.group_by_file(errors)
        ordered: List[ErrorItem] = []
        for file_errors in grouped.values():
            ordered.extend(sorted(file_errors, key=lambda e: e.line, reverse=True))
        ordered.extend(e for e in errors if not e.file_path)
        return ordered

    async def repair_errors(self,
                            errors: List[ErrorItem],
                            attempt: int = 1,
                            cancel_event: Optional[threading.Event] = None,
                            checkpoint: Optional[Callable[[], None]] = None) -> int:
        """
        Requests and applies a fix for every error.

        Args:
            errors: Diagnostics of the failed build.
            attempt: Repair attempt number (for logging and metrics).
            cancel_event: Optional cancellation signal.
            checkpoint: Called before each error; raises TaskCancelledError to abort.

        Returns:
            The number of fixes that changed the code base.

        Raises:
            TaskCancelledError: If cancelled.
        """
        if errors is None:
            raise RemediationError("No diagnostics were provided for repair.")
        applied = 0
        for error in self._ordered(errors):
            if checkpoint is not None:
                checkpoint()
            if cancel_event is not None and cancel_event.is_set():
                raise TaskCancelledError("Repair attempt cancelled.")

            analysis = self.analyzer.analyze(error)
            suggestion = await self.router.get_error_fix(error, analysis.additional_context or None,
                                                         cancel_event=cancel_event, analysis=analysis)
            if suggestion == FIX_UNAVAILABLE_MESSAGE:
                logger.warning(f"Attempt {attempt}: no fix available for {error.location}.")
                self._record(attempt, error, applied=False, reason="no_suggestion")
                continue

            try:
                changed = self.fix_applier.apply_fix(error, suggestion)
            except (PatchApplyError, OSError, ValueError, RuntimeError) as e:
                logger.error(f"Attempt {attempt}: failed to apply fix for {error.location}: {e}")
                self._record(attempt, error, applied=False, reason=str(e))
                continue
            if changed:
                applied += 1
            self._record(attempt, error, applied=changed)

        logger.info(f"Repair attempt {attempt}: applied {applied} of {len(errors)} fix(es).")
        return applied

    async def fix_errors(self, errors: List[ErrorItem], cancel_event: Optional[threading.Event] = None) -> int:
        """One-off repair of the given errors, outside of a build cycle."""
        return await self.repair_errors(errors, attempt=0, cancel_event=cancel_event)

    def _record(self, attempt: int, error: ErrorItem, applied: bool, reason: Optional[str] = None) -> None:
        if self.metrics is None:
            return
        event = {
            "event": "fix_attempt",
            "attempt": attempt,
            "file": error.file_path,
            "line": error.line,
            "description": error.description,
            "applied": applied,
        }
        if reason:
            event["reason"] = reason
        try:
            self.metrics.log_remediation_event(event)
        except OSError as e:
            logger.warning(f"Could not write remediation metrics: {e}")
