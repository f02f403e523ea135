# vspilot/core/context_manager.py
import logging
import threading
from typing import List

from .llm_client import ChatMessage, VALID_ROLES

logger = logging.getLogger(__name__)


class ContextManager:
    """
    Conversation history shared by all AI providers.

    The full history is retained for the lifetime of the manager; only the
    most recent `window_size` messages are sent with a request. Appends and
    reads are guarded by a lock because the router is used from the scheduler
    worker, the analysis worker and caller threads at the same time.
    """
    def __init__(self, window_size: int = 10):
        if window_size < 0:
            raise ValueError("window_size cannot be negative.")
        self.window_size = window_size
        self._history: List[ChatMessage] = []
        self._lock = threading.Lock()

    def add_message(self, role: str, content: str) -> None:
        if role not in VALID_ROLES:
            raise ValueError(f"Invalid message role '{role}'. Expected one of {VALID_ROLES}.")
        with self._lock:
            self._history.append({"role": role, "content": content})

    def add_exchange(self, prompt: str, response: str) -> None:
        """Appends a user prompt and the assistant's answer as one atomic step."""
        with self._lock:
            self._history.append({"role": "user", "content": prompt})
            self._history.append({"role": "assistant", "content": response})
        logger.debug(f"Conversation history now holds {len(self._history)} messages.")

    def get_context_window(self) -> List[ChatMessage]:
        """Returns copies of the most recent messages, oldest first."""
        with self._lock:
            if self.window_size == 0:
                return []
            return [dict(m) for m in self._history[-self.window_size:]]  # type: ignore[misc]

    def get_full_history(self) -> List[ChatMessage]:
        with self._lock:
            return [dict(m) for m in self._history]  # type: ignore[misc]

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
        logger.info("Conversation history cleared.")

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)
