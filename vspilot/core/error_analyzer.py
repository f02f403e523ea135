# vspilot/core/error_analyzer.py
import logging
import re
import threading
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .file_system_manager import FileSystemManager
from .project_models import ErrorAnalysis, ErrorItem, ErrorType

if TYPE_CHECKING:
    from .ai_router import AIProviderRouter

logger = logging.getLogger(__name__)

# Diagnostic code patterns, checked in order.
ERROR_PATTERNS: Tuple[Tuple[re.Pattern, ErrorType], ...] = (
    (re.compile(r"\bCS\d{4}\b", re.IGNORECASE), ErrorType.COMPILER),
    (re.compile(r"\bMSB\d{4}\b", re.IGNORECASE), ErrorType.MSBUILD),
    (re.compile(r"\bNETSDK\d{4}\b", re.IGNORECASE), ErrorType.DOTNET_SDK),
    (re.compile(r"\bNU\d{4}\b", re.IGNORECASE), ErrorType.NUGET),
    (re.compile(r"\bVSTHRD\d{3}\b", re.IGNORECASE), ErrorType.THREADING),
)

# (keyword, cause) rules per error type; first match wins, the last entry is the default.
PROBABLE_CAUSES: Dict[ErrorType, List[Tuple[Optional[str], str]]] = {
    ErrorType.COMPILER: [
        ("not found", "Missing type or namespace"),
        ("cannot be converted", "Type mismatch"),
        ("is inaccessible", "Access level mismatch"),
        (None, "Syntax or semantic error"),
    ],
    ErrorType.MSBUILD: [
        ("target", "Missing or invalid target"),
        ("reference", "Reference issue"),
        (None, "Build configuration error"),
    ],
    ErrorType.NUGET: [
        ("restore", "Package restore failure"),
        ("version", "Version conflict"),
        (None, "Package management error"),
    ],
    ErrorType.THREADING: [
        ("async", "Async/await usage issue"),
        ("deadlock", "Potential deadlock"),
        (None, "Threading pattern error"),
    ],
}

AUTO_FIXABLE_TYPES = frozenset({ErrorType.COMPILER, ErrorType.NUGET})
CRITICAL_TYPES = frozenset({ErrorType.COMPILER, ErrorType.MSBUILD})
CRITICAL_KEYWORDS = ("fatal", "critical", "security", "crash", "deadlock")
MISSING_REFERENCE_MARKERS = ("not found", "undefined", "does not exist", "could not be found")
QUOTED_NAME_PATTERN = re.compile(r"['\"`]([^'\"`]+)['\"`]")
CONTEXT_RADIUS = 3
MAX_RELATED_FILES = 10
NO_FIX_AVAILABLE = "No automatic fix available"


class ErrorAnalyzer:
    """
    Classifies build diagnostics and gathers the context needed to repair them.

    Classification is purely pattern based (diagnostic codes and keywords);
    only the suggested fix, when requested, involves the AI router.
    """
    def __init__(self, file_manager: Optional[FileSystemManager] = None):
        self.file_manager = file_manager

    @staticmethod
    def get_error_type(description: str) -> ErrorType:
        if not description:
            return ErrorType.UNKNOWN
        for pattern, error_type in ERROR_PATTERNS:
            if pattern.search(description):
                return error_type
        return ErrorType.UNKNOWN

    @staticmethod
    def determine_probable_cause(error_type: ErrorType, description: str) -> str:
        rules = PROBABLE_CAUSES.get(error_type)
        if not rules:
            return "Unknown error cause"
        for keyword, cause in rules:
            if keyword is None or keyword in description:
                return cause
        return "Unknown error cause"

    @staticmethod
    def can_auto_fix(error_type: ErrorType) -> bool:
        return error_type in AUTO_FIXABLE_TYPES

    def is_error_critical(self, error: ErrorItem) -> bool:
        """
        An error is critical when it is a compiler or MSBuild error, or, for
        uncategorised errors, when its message contains a critical keyword.
        """
        if error is None:
            raise ValueError("error cannot be None.")
        error_type = self.get_error_type(error.description)
        if error_type != ErrorType.UNKNOWN:
            return error_type in CRITICAL_TYPES
        description = error.description.lower()
        return any(keyword in description for keyword in CRITICAL_KEYWORDS)

    @staticmethod
    def get_required_references(error: ErrorItem) -> List[str]:
        """Names quoted in "not found"/"undefined" style messages, in order and without duplicates."""
        description = error.description.lower()
        if not any(marker in description for marker in MISSING_REFERENCE_MARKERS):
            return []
        names: List[str] = []
        for name in QUOTED_NAME_PATTERN.findall(error.description):
            if name not in names:
                names.append(name)
        return names

    def get_error_context(self, error: ErrorItem, radius: int = CONTEXT_RADIUS) -> str:
        """
        Returns the numbered source lines around the error line, with the error
        line marked by `>`. Empty when the file or line cannot be read.
        """
        if not self.file_manager or not error.file_path or error.line <= 0:
            return ""
        try:
            lines = self.file_manager.read_file(error.file_path).splitlines()
        except (FileNotFoundError, ValueError, UnicodeDecodeError, OSError) as e:
            logger.debug(f"No context available for {error.location}: {e}")
            return ""
        if error.line > len(lines):
            return ""
        start = max(0, error.line - 1 - radius)
        end = min(len(lines), error.line + radius)
        context = []
        for index in range(start, end):
            marker = ">" if index == error.line - 1 else " "
            context.append(f"{marker}{index + 1:5d} | {lines[index]}")
        return "\n".join(context)

    def find_related_files(self, error: ErrorItem) -> List[str]:
        """Files under the error file's folder whose content mentions the error file's name."""
        if not self.file_manager or not error.file_path:
            return []
        file_path = PurePosixPath(error.file_path.replace("\\", "/"))
        folder = str(file_path.parent)
        try:
            candidates = self.file_manager.list_files(folder)
        except ValueError:
            return []
        related: List[str] = []
        for candidate in candidates:
            if candidate == file_path.as_posix():
                continue
            try:
                content = self.file_manager.read_file(candidate)
            except (UnicodeDecodeError, OSError):
                continue
            if file_path.name in content or file_path.stem in content:
                related.append(candidate)
                if len(related) >= MAX_RELATED_FILES:
                    break
        return related

    def analyze(self, error: ErrorItem) -> ErrorAnalysis:
        """Builds the pattern-based analysis of an error (no AI involved)."""
        if error is None:
            raise ValueError("error cannot be None.")
        error_type = self.get_error_type(error.description)
        return ErrorAnalysis(
            error_type=error_type,
            probable_cause=self.determine_probable_cause(error_type, error.description),
            suggested_fix=NO_FIX_AVAILABLE,
            additional_context=self.get_error_context(error),
            can_auto_fix=self.can_auto_fix(error_type),
            related_files=self.find_related_files(error),
            required_references=self.get_required_references(error),
        )

    async def get_error_analysis(self, error: ErrorItem, router: Optional["AIProviderRouter"] = None,
                                 cancel_event: Optional[threading.Event] = None) -> ErrorAnalysis:
        """Like `analyze`, with the suggested fix filled in by the AI router when one is given."""
        analysis = self.analyze(error)
        if router is not None:
            fix = await router.get_error_fix(error, analysis.additional_context or None,
                                             cancel_event=cancel_event, analysis=analysis)
            analysis.suggested_fix = fix or NO_FIX_AVAILABLE
        return analysis

    @staticmethod
    def group_by_file(errors: List[ErrorItem]) -> Dict[str, List[ErrorItem]]:
        """Groups errors with a known file by path, preserving order of first appearance."""
        grouped: Dict[str, List[ErrorItem]] = {}
        for error in errors:
            if error.file_path:
                grouped.setdefault(error.file_path, []).append(error)
        return grouped
