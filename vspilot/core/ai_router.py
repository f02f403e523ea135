# vspilot/core/ai_router.py
import asyncio
import logging
import re
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from .anthropic_client import AnthropicClient
from .config_manager import ConfigManager, VSPilotSettings
from .context_manager import ContextManager
from .copilot_client import CopilotClient, CopilotDetector
from .exceptions import ProviderError, TaskCancelledError
from .llm_client import ChatMessage
from .openai_client import OpenAIClient
from .project_models import AIProvider, ErrorAnalysis, ErrorItem, ErrorType

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "No AI provider is configured. Please configure an API key in VSPilot Settings."
NOT_AVAILABLE_MESSAGE = "The selected AI provider ({provider}) is not available. Please check your settings."
FIX_UNAVAILABLE_MESSAGE = "Error fix suggestion could not be generated."
ANALYSIS_PROMPT = "Analyze project {project_name} and provide recommendations for improvements."
JSON_INSTRUCTION = "Respond only with valid JSON. Do not wrap it in Markdown."

# Order used for Auto mode defaults and for every availability fallback.
FALLBACK_ORDER: Tuple[AIProvider, ...] = (AIProvider.OPENAI, AIProvider.ANTHROPIC, AIProvider.COPILOT)

PROVIDER_DISPLAY_NAMES = {
    AIProvider.OPENAI: "OpenAI",
    AIProvider.ANTHROPIC: "Anthropic",
    AIProvider.COPILOT: "GitHub Copilot",
    AIProvider.AUTO: "Auto",
}

CODE_GENERATION_KEYWORDS = frozenset({"generate", "create", "implement", "write", "add", "refactor", "complete"})
EXPLANATION_KEYWORDS = frozenset({"explain", "why", "describe", "what", "how", "analyze", "review", "summarize"})

AnalysisCompletedCallable = Callable[[str, str], None]


class ChatClient(Protocol):
    def chat(self, messages: List[ChatMessage], temperature: float = ..., max_tokens: Optional[int] = ...) -> ChatMessage: ...


class AIProviderRouter:
    """
    Routes AI requests to one of several backends (OpenAI, Anthropic, GitHub Copilot).

    Responsibilities:
    - Choosing a provider per request (explicit setting or Auto heuristics).
    - Falling back to another available provider when the chosen one is not
      configured. Failures during a call are never retried elsewhere; they
      surface as ProviderError.
    - Keeping one conversation history shared by all providers, of which only
      the most recent `context_window` messages are sent.
    - Running project analyses from a FIFO queue on a single background worker.
    """
    def __init__(self,
                 settings: Optional[VSPilotSettings] = None,
                 config_manager: Optional[ConfigManager] = None,
                 copilot_detector: Optional[CopilotDetector] = None,
                 clients: Optional[Dict[AIProvider, ChatClient]] = None,
                 context: Optional[ContextManager] = None,
                 on_analysis_completed: Optional[AnalysisCompletedCallable] = None,
                 cancel_poll_interval: float = 0.1):
        """
        Args:
            settings: Provider selection and request settings. Defaults are used if omitted.
            config_manager: Resolves API keys for OpenAI and Anthropic.
            copilot_detector: Detects a local Copilot login.
            clients: Pre-built clients keyed by provider. A provider listed here is
                considered available regardless of stored keys.
            context: Conversation history to use. A new one sized by the settings is created if omitted.
            on_analysis_completed: Called with (project_name, result) after each queued analysis.
            cancel_poll_interval: How often a pending request checks its cancellation signal (seconds).
        """
        self.settings = settings or VSPilotSettings()
        self.config_manager = config_manager
        self.copilot_detector = copilot_detector
        self.context = context or ContextManager(window_size=self.settings.context_window)
        self.on_analysis_completed = on_analysis_completed
        self.cancel_poll_interval = cancel_poll_interval
        self.last_provider: Optional[AIProvider] = None

        self._clients: Dict[AIProvider, ChatClient] = dict(clients or {})
        self._injected_providers = frozenset(self._clients)
        self._clients_lock = threading.Lock()

        # Analysis queue: the queue and the single-flight flag each have their own lock.
        self._analysis_queue: Deque[str] = deque()
        self._analysis_queue_lock = threading.Lock()
        self._analysis_flag_lock = threading.Lock()
        self._is_processing_analysis = False
        self._analysis_thread: Optional[threading.Thread] = None
        self.analysis_results: Dict[str, str] = {}

    # --- Availability & selection ---

    def is_available(self, provider: AIProvider) -> bool:
        """True if a request could be sent to `provider` right now without configuration changes."""
        provider = AIProvider(provider)
        if provider == AIProvider.AUTO:
            return False
        if provider == AIProvider.COPILOT and not self.settings.use_github_copilot:
            return False
        if provider in self._injected_providers:
            return True
        if provider == AIProvider.COPILOT:
            return self.copilot_detector is not None and self.copilot_detector.is_logged_in
        return self.config_manager is not None and self.config_manager.has_api_key(provider)

    def available_providers(self) -> List[AIProvider]:
        """Available providers in fallback order."""
        return [p for p in FALLBACK_ORDER if self.is_available(p)]

    def select_provider(self, prompt: str, require_json: bool = False) -> Optional[AIProvider]:
        """Returns the provider a request with this prompt would be sent to, or None if none can serve it."""
        provider, _ = self._resolve_provider(prompt, require_json)
        return provider

    def _resolve_provider(self, prompt: str, require_json: bool) -> Tuple[Optional[AIProvider], Optional[str]]:
        """
        Applies the selection rules.

        Returns:
            (provider, None) on success, or (None, informational message) when
            no provider can serve the request.
        """
        available = self.available_providers()
        if not available:
            return None, NOT_CONFIGURED_MESSAGE

        selected = self.settings.selected_ai_provider
        if selected != AIProvider.AUTO:
            if selected in available:
                return selected, None
            if self.settings.auto_switch_providers:
                logger.warning(f"{PROVIDER_DISPLAY_NAMES[selected]} is not available. Switching to {PROVIDER_DISPLAY_NAMES[available[0]]}.")
                return available[0], None
            return None, NOT_AVAILABLE_MESSAGE.format(provider=PROVIDER_DISPLAY_NAMES[selected])

        candidate = self._choose_auto_provider(prompt, require_json)
        if candidate in available:
            return candidate, None
        logger.info(f"Auto-selected {PROVIDER_DISPLAY_NAMES[candidate]} is not available. Using {PROVIDER_DISPLAY_NAMES[available[0]]}.")
        return available[0], None

    def _choose_auto_provider(self, prompt: str, require_json: bool) -> AIProvider:
        if require_json and self.is_available(AIProvider.OPENAI):
            return AIProvider.OPENAI

        # The first classifying keyword in the prompt decides.
        for word in re.findall(r"[a-z]+", (prompt or "").lower()):
            if word in CODE_GENERATION_KEYWORDS:
                return AIProvider.COPILOT
            if word in EXPLANATION_KEYWORDS:
                return AIProvider.ANTHROPIC

        preferred = self.settings.preferred_provider
        if preferred is not None and preferred != AIProvider.AUTO:
            return preferred
        return FALLBACK_ORDER[0]

    # --- Clients ---

    def _get_client_class(self, provider: AIProvider) -> type:
        client_map = {
            AIProvider.OPENAI: OpenAIClient,
            AIProvider.ANTHROPIC: AnthropicClient,
            AIProvider.COPILOT: CopilotClient,
        }
        return client_map[provider]

    def _get_client(self, provider: AIProvider) -> ChatClient:
        """
        Returns the cached client for a provider, creating it on first use.

        Raises:
            ProviderError: If the client cannot be constructed (missing key, SDK failure).
        """
        with self._clients_lock:
            client = self._clients.get(provider)
            if client is not None:
                return client

            client_class = self._get_client_class(provider)
            try:
                if provider == AIProvider.COPILOT:
                    token = self.copilot_detector.status().oauth_token if self.copilot_detector else None
                    client = client_class(oauth_token=token, model=self.settings.copilot_model)
                else:
                    api_key = self.config_manager.get_api_key(provider) if self.config_manager else None
                    model = self.settings.openai_model if provider == AIProvider.OPENAI else self.settings.anthropic_model
                    client = client_class(api_key=api_key, model=model)
            except (ValueError, RuntimeError) as e:
                logger.error(f"Could not create {PROVIDER_DISPLAY_NAMES[provider]} client: {e}")
                raise ProviderError(f"Could not create {PROVIDER_DISPLAY_NAMES[provider]} client: {e}", provider=provider.value) from e

            self._clients[provider] = client
            return client

    # --- Completions ---

    def _build_request(self, prompt: str, require_json: bool) -> List[ChatMessage]:
        system_content = self.settings.system_prompt
        if require_json:
            system_content = f"{system_content}\n{JSON_INSTRUCTION}"
        messages: List[ChatMessage] = [{"role": "system", "content": system_content}]
        messages.extend(self.context.get_context_window())
        messages.append({"role": "user", "content": prompt})
        return messages

    async def get_completion(self, prompt: str, maintain_context: bool = True, require_json: bool = False,
                             cancel_event: Optional[threading.Event] = None) -> str:
        """
        Sends a prompt to the selected provider and returns the answer text.

        Args:
            prompt: The user prompt.
            maintain_context: Append the prompt and the answer to the shared history on success.
            require_json: Ask for a JSON answer (prefers OpenAI in Auto mode).
            cancel_event: Optional signal that abandons the pending request.

        Returns:
            The assistant's answer, or an informational message when no provider
            is configured or the selected one is unavailable.

        Raises:
            ValueError: If the prompt is empty.
            ProviderError: If the provider call fails.
            TaskCancelledError: If `cancel_event` is set before the answer arrives.
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt cannot be empty.")

        provider, message = self._resolve_provider(prompt, require_json)
        if provider is None:
            logger.warning(message)
            return message

        client = self._get_client(provider)
        messages = self._build_request(prompt, require_json)
        provider_name = PROVIDER_DISPLAY_NAMES[provider]
        logger.info(f"Routing request to {provider_name} with {len(messages) - 2} context message(s).")

        try:
            response = await self._run_cancellable(
                client.chat, messages, temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens, cancel_event=cancel_event,
            )
            content = (response or {}).get("content", "") or ""
        except RuntimeError as e:
            # RateLimitError and AuthenticationError are RuntimeError subclasses.
            logger.error(f"{provider_name} request failed: {e}")
            raise ProviderError(f"{provider_name} request failed: {e}", provider=provider.value) from e
        except (KeyError, TypeError, AttributeError) as e:
            # Malformed response from the client.
            logger.exception(f"{provider_name} returned an unusable response: {e!r}")
            raise ProviderError(f"{provider_name} returned an unusable response: {e!r}", provider=provider.value) from e

        self.last_provider = provider
        if maintain_context:
            self.context.add_exchange(prompt, content)
        return content

    async def _run_cancellable(self, func: Callable[..., Any], *args: Any,
                               cancel_event: Optional[threading.Event] = None, **kwargs: Any) -> Any:
        """
        Runs a blocking call in a worker thread. If `cancel_event` is set before it
        returns, the result is abandoned and TaskCancelledError is raised.
        """
        if cancel_event is None:
            return await asyncio.to_thread(func, *args, **kwargs)
        if cancel_event.is_set():
            raise TaskCancelledError("Request cancelled before it was sent.")

        call = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
        while not call.done():
            if cancel_event.is_set():
                call.cancel()
                raise TaskCancelledError("Request cancelled while waiting for the provider.")
            await asyncio.wait({call}, timeout=self.cancel_poll_interval)
        return call.result()

    async def get_error_fix(self, error_item: ErrorItem, context_lines: Optional[str] = None,
                            cancel_event: Optional[threading.Event] = None,
                            analysis: Optional[ErrorAnalysis] = None) -> str:
        """
        Asks the AI for a replacement of the line reported by a build diagnostic.
        When an `analysis` is given, its classification and probable cause are
        included in the prompt.

        Never raises for provider problems: when no suggestion can be produced the
        result is FIX_UNAVAILABLE_MESSAGE. Cancellation still propagates.
        """
        prompt_parts = [
            "Fix the following build error.",
            f"Error: {error_item.description}",
            f"Location: {error_item.location}",
        ]
        if analysis is not None:
            if analysis.error_type != ErrorType.UNKNOWN:
                prompt_parts.append(f"Error type: {analysis.error_type.value}")
                prompt_parts.append(f"Probable cause: {analysis.probable_cause}")
            if analysis.required_references:
                prompt_parts.append(f"Possibly missing references: {', '.join(analysis.required_references)}")
        if context_lines:
            prompt_parts.append(f"Code context:\n{context_lines}")
        prompt_parts.append("Respond with only the corrected source line, without explanations or Markdown.")
        prompt = "\n".join(prompt_parts)

        if self.select_provider(prompt) is None:
            logger.warning(f"No AI provider available to fix error at {error_item.location}.")
            return FIX_UNAVAILABLE_MESSAGE
        try:
            suggestion = await self.get_completion(prompt, maintain_context=False, cancel_event=cancel_event)
        except ProviderError as e:
            logger.error(f"Failed to get error fix for {error_item.location}: {e}")
            return FIX_UNAVAILABLE_MESSAGE
        return suggestion.strip() or FIX_UNAVAILABLE_MESSAGE

    # --- Conversation ---

    def get_conversation_history(self) -> List[ChatMessage]:
        return self.context.get_full_history()

    def clear_context(self) -> None:
        self.context.clear()

    # --- Analysis queue ---

    @property
    def analysis_in_progress(self) -> bool:
        with self._analysis_flag_lock:
            return self._is_processing_analysis

    def queue_analysis(self, project_name: str) -> None:
        """
        Queues a project analysis. A single background worker drains the queue in
        FIFO order; queuing while it runs only appends.
        """
        if not project_name or not project_name.strip():
            raise ValueError("Project name cannot be empty.")
        with self._analysis_queue_lock:
            self._analysis_queue.append(project_name)
        logger.info(f"Queued analysis for project '{project_name}'.")

        with self._analysis_flag_lock:
            if self._is_processing_analysis:
                return
            self._is_processing_analysis = True
            self._analysis_thread = threading.Thread(target=self._run_analysis_worker, name="vspilot-analysis", daemon=True)
            self._analysis_thread.start()

    def wait_for_analysis(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the analysis worker has drained the queue. Returns False on timeout."""
        thread = self._analysis_thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                return False
        return not self.analysis_in_progress

    def _run_analysis_worker(self) -> None:
        try:
            asyncio.run(self._drain_analysis_queue())
        except Exception:
            # A normal exit clears the flag in _next_analysis.
            logger.exception("Analysis worker terminated unexpectedly.")
            with self._analysis_flag_lock:
                self._is_processing_analysis = False

    def _next_analysis(self) -> Optional[str]:
        """Pops the next project, clearing the busy flag atomically when the queue is empty."""
        with self._analysis_flag_lock:
            with self._analysis_queue_lock:
                if self._analysis_queue:
                    return self._analysis_queue.popleft()
            self._is_processing_analysis = False
            return None

    async def _drain_analysis_queue(self) -> None:
        while True:
            project_name = self._next_analysis()
            if project_name is None:
                return
            logger.info(f"Analyzing project '{project_name}'...")
            try:
                result = await self.get_completion(ANALYSIS_PROMPT.format(project_name=project_name))
            except (ProviderError, ValueError) as e:
                logger.error(f"Analysis of project '{project_name}' failed: {e}")
                result = f"Analysis failed: {e}"
            except Exception as e:
                logger.exception(f"Unexpected error while analyzing project '{project_name}'.")
                result = f"Analysis failed: {e!r}"
            self.analysis_results[project_name] = result
            if self.on_analysis_completed:
                try:
                    self.on_analysis_completed(project_name, result)
                except Exception:
                    logger.exception("Analysis-completed handler raised an exception.")
