# vspilot/core/config_manager.py
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .project_models import AIProvider
from .secure_storage import (
    ANTHROPIC_API_KEY,
    OPENAI_API_KEY,
    delete_credential,
    retrieve_credential,
    store_credential,
)

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV_VAR = "VSPILOT_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".vspilot" / "settings.json"
DEFAULT_SYSTEM_PROMPT = "You are a Visual Studio extension helping with code automation."

# Keyring identifier and environment fallbacks (checked in order) per provider.
PROVIDER_KEY_SOURCES: Dict[AIProvider, Tuple[str, Tuple[str, ...]]] = {
    AIProvider.OPENAI: (OPENAI_API_KEY, ("OPENAI_API_KEY", "VSPILOT_API_KEY")),
    AIProvider.ANTHROPIC: (ANTHROPIC_API_KEY, ("ANTHROPIC_API_KEY",)),
}


class VSPilotSettings(BaseModel):
    """
    User-facing settings. API keys are deliberately absent: they live in the OS
    keyring and are resolved through ConfigManager.get_api_key.
    """
    # Automation
    auto_build_after_changes: bool = True
    auto_run_tests: bool = True
    auto_fix_errors: bool = True
    max_auto_fix_attempts: int = Field(default=3, ge=0)
    show_detailed_logs: bool = False
    preferred_folder_structure: str = "Standard"

    # AI providers
    selected_ai_provider: AIProvider = AIProvider.AUTO
    preferred_provider: Optional[AIProvider] = None
    use_github_copilot: bool = True
    auto_switch_providers: bool = True
    openai_model: str = "gpt-4"
    anthropic_model: str = "claude-3-5-sonnet-latest"
    copilot_model: str = "gpt-4o"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    context_window: int = Field(default=10, ge=0)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Polling intervals (seconds)
    scheduler_poll_interval: float = Field(default=0.5, gt=0)
    build_poll_interval: float = Field(default=0.1, gt=0)

    metrics_file: Optional[str] = None


class ConfigManager:
    """
    Loads and persists VSPilotSettings as JSON and resolves provider API keys.

    Key resolution order: secure storage (keyring) first, then environment
    variables. Keys are never written to the settings file.
    """
    def __init__(self, config_path: Optional[str | Path] = None):
        """
        Args:
            config_path: Location of the settings file. Defaults to the
                `VSPILOT_CONFIG` environment variable, then `~/.vspilot/settings.json`.
        """
        if config_path is None:
            config_path = os.getenv(CONFIG_PATH_ENV_VAR) or DEFAULT_CONFIG_PATH
        self.config_path = Path(config_path).expanduser().resolve()
        logger.info(f"ConfigManager initialized. Settings file: {self.config_path}")

    def load_settings(self) -> VSPilotSettings:
        """
        Reads the settings file.

        A missing file yields the defaults. An unreadable or invalid file is
        logged and also yields the defaults, so that a corrupt file never
        prevents start-up.
        """
        if not self.config_path.is_file():
            logger.info("No settings file found. Using default settings.")
            return VSPilotSettings()
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            settings = VSPilotSettings.model_validate(data)
            logger.info(f"Loaded settings from '{self.config_path}'.")
            return settings
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read settings file '{self.config_path}': {e}. Using defaults.")
        except ValidationError as e:
            logger.error(f"Settings file '{self.config_path}' is invalid:\n{e}\nUsing defaults.")
        return VSPilotSettings()

    def save_settings(self, settings: VSPilotSettings) -> None:
        """
        Writes the settings file atomically (temp file + replace).

        Raises:
            RuntimeError: If the file cannot be written.
        """
        temp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(settings.model_dump(mode="json"), f, indent=2)
            os.replace(temp_path, self.config_path)
            logger.info(f"Settings saved to '{self.config_path}'.")
        except OSError as e:
            logger.exception(f"Failed to save settings to '{self.config_path}'.")
            raise RuntimeError(f"Failed to save settings: {e}") from e

    # --- API keys ---

    def get_api_key(self, provider: AIProvider) -> Optional[str]:
        """Returns the API key for a key-based provider, or None when none is configured."""
        sources = PROVIDER_KEY_SOURCES.get(AIProvider(provider))
        if sources is None:
            return None
        keyring_name, env_vars = sources
        api_key = retrieve_credential(keyring_name)
        if api_key:
            return api_key
        for env_var in env_vars:
            value = os.getenv(env_var, "").strip()
            if value:
                logger.debug(f"Using {AIProvider(provider).value} API key from environment variable {env_var}.")
                return value
        return None

    def has_api_key(self, provider: AIProvider) -> bool:
        return self.get_api_key(provider) is not None

    def set_api_key(self, provider: AIProvider, api_key: str) -> None:
        """
        Raises:
            ValueError: If the provider does not use an API key, or the key is blank.
            RuntimeError: If secure storage is unavailable.
        """
        sources = PROVIDER_KEY_SOURCES.get(AIProvider(provider))
        if sources is None:
            raise ValueError(f"Provider '{AIProvider(provider).value}' does not use an API key.")
        store_credential(sources[0], api_key)

    def clear_api_key(self, provider: AIProvider) -> bool:
        sources = PROVIDER_KEY_SOURCES.get(AIProvider(provider))
        if sources is None:
            return True
        return delete_credential(sources[0])
