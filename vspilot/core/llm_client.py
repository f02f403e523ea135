# vspilot/core/llm_client.py
import json
import logging
import random
import time
from typing import Any, Dict, List, Optional, TypedDict

import requests
import requests.exceptions

logger = logging.getLogger(__name__)

class ChatMessage(TypedDict, total=False):
    """
    A standardized dictionary structure for representing a single message in a conversation.
    This is used consistently across all provider clients and the conversation history.
    """
    role: str  # 'user', 'assistant', or 'system'
    content: str
    name: Optional[str]

class RateLimitError(RuntimeError):
    """
    Raised specifically for API rate limit errors (e.g., HTTP 429).
    """
    pass

class AuthenticationError(RuntimeError):
    """
    Raised specifically for API authentication errors (e.g., HTTP 401/403).
    """
    pass

VALID_ROLES = ("system", "user", "assistant")


def filter_valid_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    """
    Drops malformed entries and unknown roles, keeping only role/content pairs.

    Raises:
        ValueError: If the input is empty or nothing valid remains.
    """
    if not messages or not isinstance(messages, list):
        raise ValueError("Cannot send chat request with empty or invalid messages list.")
    valid_messages: List[ChatMessage] = []
    for i, msg in enumerate(messages):
        if isinstance(msg, dict) and msg.get("role") in VALID_ROLES and isinstance(msg.get("content"), str):
            valid_messages.append({"role": msg["role"], "content": msg["content"]})
        else:
            logger.warning(f"Skipping invalid message structure at index {i}: {str(msg)[:100]}...")
    if not valid_messages:
        raise ValueError("No valid messages found in the input list to send.")
    return valid_messages


class LlmClient:
    """
    A client for OpenAI-compatible chat completion endpoints over plain HTTP.

    Includes:
    - Sending chat completion requests through a pooled `requests.Session`.
    - Retry with exponential backoff and jitter for timeouts, connection errors,
      HTTP 408/5xx and rate limits.
    - Immediate AuthenticationError on HTTP 401/403.

    Subclasses adapt it to other wire formats by overriding `_build_payload`,
    `_build_headers` and `_parse_response`.
    """
    provider_label = "LLM"

    def __init__(self,
                 api_key: str,
                 model: str,
                 api_base: Optional[str] = None,
                 extra_headers: Optional[Dict[str, str]] = None,
                 request_timeout: float = 120,
                 max_retries: int = 3,
                 initial_retry_delay: float = 2.0):
        """
        Initializes the client.

        Args:
            api_key: Bearer token for the endpoint.
            model: The model identifier to request.
            api_base: Full URL of the chat completions endpoint.
            extra_headers: Headers added to every request (e.g., editor identification).
            request_timeout: Per-request timeout in seconds.
            max_retries: Maximum number of attempts for transient errors.
            initial_retry_delay: Base delay before the first retry (seconds).

        Raises:
            ValueError: If api_key or model is invalid.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError(f"{type(self).__name__} requires a valid string API key.")
        if not model or not isinstance(model, str):
            raise ValueError(f"{type(self).__name__} requires a valid string model ID.")

        self.api_key = api_key.strip()
        self.model = model
        self.api_endpoint = api_base or "https://api.openai.com/v1/chat/completions"
        self.request_timeout = request_timeout
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay

        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if extra_headers:
            self.session.headers.update(extra_headers)

        logger.info(f"{type(self).__name__} instance created for model '{self.model}'. Endpoint: {self.api_endpoint}")

    # --- Wire format hooks ---

    def _build_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _build_payload(self, messages: List[ChatMessage], temperature: float, max_tokens: Optional[int]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": temperature}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    def _parse_response(self, data: Any) -> str:
        """Extracts the assistant text from a decoded response body. Raises ValueError on bad shape."""
        if not isinstance(data, dict) or not isinstance(data.get("choices"), list) or not data["choices"]:
            raise ValueError("'choices' array is missing or empty.")
        message_data = data["choices"][0].get("message")
        if not isinstance(message_data, dict) or "content" not in message_data:
            raise ValueError("'message' object or 'content' key is missing.")
        return message_data.get("content") or ""

    @staticmethod
    def _extract_error_message(response: requests.Response, default: str) -> str:
        try:
            error_data = response.json().get("error", {})
            if isinstance(error_data, dict):
                return error_data.get("message", default)
        except (json.JSONDecodeError, AttributeError, ValueError):
            pass
        return default

    # --- Public API ---

    def chat(self, messages: List[ChatMessage], temperature: float = 0.7, max_tokens: Optional[int] = None) -> ChatMessage:
        """
        Sends a chat completion request with validation and retry logic.

        Args:
            messages: The conversation, including any system prompt.
            temperature: The sampling temperature to use for the request.
            max_tokens: Optional upper bound on generated tokens.

        Returns:
            A ChatMessage dictionary representing the assistant's response.

        Raises:
            ValueError: If the messages list is empty or invalid.
            RateLimitError: If the endpoint keeps returning 429 after all retries.
            AuthenticationError: If the endpoint returns 401 or 403.
            RuntimeError: If the request fails after all retries or hits an unrecoverable error.
        """
        valid_messages = filter_valid_messages(messages)
        payload = self._build_payload(valid_messages, temperature, max_tokens)
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            should_retry = False
            logger.info(f"Sending {len(valid_messages)} messages to '{self.model}' (Attempt {attempt}/{self.max_retries})...")
            if logger.isEnabledFor(logging.DEBUG):
                try:
                    logger.debug(f"Request Payload:\n{json.dumps(payload, indent=2)}")
                except TypeError:
                    logger.debug(f"Request Payload (non-serializable): {payload}")

            start_time = time.time()
            try:
                response = self.session.post(
                    self.api_endpoint,
                    headers=self._build_headers(),
                    json=payload,
                    timeout=self.request_timeout,
                )
                logger.debug(f"Attempt {attempt}: API call returned after {time.time() - start_time:.2f} seconds. Status code: {response.status_code}")

                if response.status_code == 429:
                    message = self._extract_error_message(response, "API Rate Limit Exceeded (HTTP 429)")
                    last_exception = RateLimitError(f"API Rate Limit Exceeded for {self.model}: {message}")
                    logger.warning(f"API Rate Limit Exceeded for {self.model}. Message: {message}")
                    should_retry = True
                elif response.status_code in (401, 403):
                    message = self._extract_error_message(response, f"Authentication Failed (HTTP {response.status_code})")
                    logger.error(f"API Authentication Failed for {self.model}. Message: {message}")
                    raise AuthenticationError(f"API Authentication Failed for {self.model}: {message}")
                else:
                    # Non-2xx codes not handled above become HTTPError.
                    response.raise_for_status()
                    try:
                        content = self._parse_response(response.json())
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.error(f"Invalid response from {self.provider_label} ({self.model}) on attempt {attempt}: {e}")
                        logger.debug(f"Raw response text: {response.text[:1000]}...")
                        last_exception = RuntimeError(f"Invalid response structure from {self.provider_label}: {e}")
                        should_retry = True
                    else:
                        logger.info(f"Response received successfully from {self.provider_label} model {self.model}.")
                        return {"role": "assistant", "content": content.strip()}

            except requests.exceptions.Timeout as e:
                logger.warning(f"Timeout occurred on attempt {attempt} after {time.time() - start_time:.2f} seconds: {e}")
                last_exception = e
                should_retry = True
            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                last_exception = e
                if status_code is not None and (status_code == 408 or 500 <= status_code < 600):
                    logger.warning(f"Retryable HTTP error encountered (Status: {status_code}).")
                    should_retry = True
                else:
                    logger.error(f"Non-retryable HTTP error for {self.model}: {e}")
                    raise RuntimeError(f"HTTP error during API call to {self.model}: {e}") from e
            except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
                logger.warning(f"Connection/Network error on attempt {attempt}: {e}")
                last_exception = e
                should_retry = True
            except requests.exceptions.RequestException as e:
                logger.error(f"An unrecoverable network request error occurred: {e}", exc_info=True)
                raise RuntimeError(f"Unrecoverable network error during API call to {self.model}: {e}") from e

            if should_retry and attempt < self.max_retries:
                wait_time = self.initial_retry_delay * (2 ** (attempt - 1))
                jitter_wait_time = random.uniform(0, wait_time)
                logger.info(f"Waiting {jitter_wait_time:.2f} seconds (base backoff: {wait_time:.2f}s) before retry ({attempt + 1}/{self.max_retries})...")
                time.sleep(jitter_wait_time)

        logger.error(f"Max retries ({self.max_retries}) reached for {self.model}.")
        if isinstance(last_exception, (RateLimitError, RuntimeError)):
            raise last_exception
        raise RuntimeError(f"Failed to get valid response from {self.model} after {self.max_retries} attempts: {last_exception}") from last_exception
