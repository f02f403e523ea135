# vspilot/core/copilot_client.py
import dataclasses
import json
import logging
import os
import platform
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import requests
import requests.exceptions

from .llm_client import AuthenticationError, LlmClient, RateLimitError

logger = logging.getLogger(__name__)

COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
COPILOT_CHAT_URL = "https://api.githubcopilot.com/chat/completions"
COPILOT_CONFIG_FILES = ("hosts.json", "apps.json")
EDITOR_HEADERS = {
    "Editor-Version": "vspilot/0.1.0",
    "Editor-Plugin-Version": "vspilot/0.1.0",
    "Copilot-Integration-Id": "vscode-chat",
}
# Session tokens are refreshed this many seconds before they expire.
TOKEN_REFRESH_MARGIN = 60


@dataclasses.dataclass(frozen=True)
class CopilotStatus:
    is_installed: bool
    is_logged_in: bool
    oauth_token: Optional[str] = None
    config_path: Optional[Path] = None


def default_copilot_config_dirs() -> List[Path]:
    """Locations where the GitHub Copilot editor integrations keep their login state."""
    dirs: List[Path] = []
    if platform.system() == "Windows":
        local_app_data = os.getenv("LOCALAPPDATA")
        if local_app_data:
            dirs.append(Path(local_app_data) / "github-copilot")
    xdg_config = os.getenv("XDG_CONFIG_HOME")
    if xdg_config:
        dirs.append(Path(xdg_config) / "github-copilot")
    dirs.append(Path.home() / ".config" / "github-copilot")
    return dirs


class CopilotDetector:
    """
    Best-effort detection of a local GitHub Copilot installation and login.

    The result is computed once and cached; call `refresh()` after the user has
    signed in. A missing or unreadable installation is a normal condition and
    simply reports the provider as unavailable.
    """
    def __init__(self, config_dirs: Optional[List[Path]] = None):
        self.config_dirs = [Path(d) for d in config_dirs] if config_dirs is not None else default_copilot_config_dirs()
        self._status: Optional[CopilotStatus] = None
        self._lock = threading.Lock()

    def status(self) -> CopilotStatus:
        with self._lock:
            if self._status is None:
                self._status = self._detect()
            return self._status

    def refresh(self) -> CopilotStatus:
        with self._lock:
            self._status = self._detect()
            return self._status

    @property
    def is_installed(self) -> bool:
        return self.status().is_installed

    @property
    def is_logged_in(self) -> bool:
        return self.status().is_logged_in

    def _detect(self) -> CopilotStatus:
        installed = False
        for config_dir in self.config_dirs:
            if not config_dir.is_dir():
                continue
            installed = True
            for file_name in COPILOT_CONFIG_FILES:
                config_file = config_dir / file_name
                token = self._read_oauth_token(config_file)
                if token:
                    logger.info(f"GitHub Copilot login found in '{config_file}'.")
                    return CopilotStatus(is_installed=True, is_logged_in=True, oauth_token=token, config_path=config_file)
        if installed:
            logger.info("GitHub Copilot is installed but no login was found.")
        else:
            logger.debug("GitHub Copilot configuration not found.")
        return CopilotStatus(is_installed=installed, is_logged_in=False)

    @staticmethod
    def _read_oauth_token(config_file: Path) -> Optional[str]:
        if not config_file.is_file():
            return None
        try:
            data = json.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read Copilot configuration '{config_file}': {e}")
            return None
        if not isinstance(data, dict):
            return None
        # Keys look like "github.com" or "github.com:<app id>".
        for host, entry in data.items():
            if str(host).startswith("github.com") and isinstance(entry, dict):
                token = entry.get("oauth_token")
                if isinstance(token, str) and token.strip():
                    return token.strip()
        return None


class CopilotClient(LlmClient):
    """
    Chat client for GitHub Copilot.

    The long-lived OAuth token from the local Copilot login is exchanged for a
    short-lived session token, which is then used against the OpenAI-compatible
    Copilot chat endpoint. The session token is cached until shortly before
    it expires.
    """
    provider_label = "Copilot"

    def __init__(self, oauth_token: str, model: str = "gpt-4o", api_base: Optional[str] = None,
                 token_url: str = COPILOT_TOKEN_URL, **kwargs):
        super().__init__(oauth_token, model, api_base=api_base or COPILOT_CHAT_URL, extra_headers=EDITOR_HEADERS, **kwargs)
        self.token_url = token_url
        self._session_token: Optional[str] = None
        self._session_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _build_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._get_session_token()}"}

    def _get_session_token(self) -> str:
        """
        Returns a valid Copilot session token, exchanging the OAuth token if needed.

        Raises:
            AuthenticationError: If GitHub rejects the OAuth token.
            RateLimitError: If the token endpoint is rate limited.
            RuntimeError: If the exchange fails for any other reason.
        """
        with self._token_lock:
            if self._session_token and time.time() < self._session_expires_at - TOKEN_REFRESH_MARGIN:
                return self._session_token

            logger.info("Exchanging GitHub OAuth token for a Copilot session token...")
            try:
                response = self.session.get(
                    self.token_url,
                    headers={"Authorization": f"token {self.api_key}", **EDITOR_HEADERS},
                    timeout=self.request_timeout,
                )
            except requests.exceptions.RequestException as e:
                raise RuntimeError(f"Copilot token exchange failed: {e}") from e

            if response.status_code in (401, 403, 404):
                raise AuthenticationError(f"GitHub rejected the Copilot login (HTTP {response.status_code}).")
            if response.status_code == 429:
                raise RateLimitError("Copilot token endpoint rate limit exceeded (HTTP 429).")
            if not response.ok:
                raise RuntimeError(f"Copilot token exchange failed with HTTP {response.status_code}.")
            try:
                data = response.json()
                self._session_token = data["token"]
                self._session_expires_at = float(data.get("expires_at", time.time() + 600))
            except (ValueError, KeyError, TypeError) as e:
                raise RuntimeError(f"Invalid Copilot token response: {e}") from e

            logger.debug("Copilot session token acquired.")
            return self._session_token
