# vspilot/core/metrics_tracker.py
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class MetricsTracker:
    """
    Records build and repair events to a JSONL (JSON Lines) file.

    Each entry is a self-contained JSON object on its own line with a UTC
    timestamp, so the file can be appended to from several runs and parsed
    line by line.
    """

    def __init__(self, log_file_path: str | Path):
        """
        Args:
            log_file_path: The file events are appended to (e.g., 'repair_metrics.jsonl').
        """
        self.log_file_path = Path(log_file_path)
        self._lock = threading.Lock()

    def log_remediation_event(self, event_data: Dict[str, Any]) -> None:
        """
        Appends one event. The given dictionary is not modified; a copy with a
        `timestamp` field (ISO 8601, UTC) is written.
        """
        entry = dict(event_data)
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_entry = json.dumps(entry, default=str)
        with self._lock:
            self.log_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file_path, "a", encoding="utf-8") as f:
                f.write(log_entry + "\n")

    def read_events(self) -> List[Dict[str, Any]]:
        """Returns all recorded events. Malformed lines are skipped with a warning."""
        if not self.log_file_path.is_file():
            return []
        events: List[Dict[str, Any]] = []
        with open(self.log_file_path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed metrics line {line_number} in '{self.log_file_path}'.")
        return events
