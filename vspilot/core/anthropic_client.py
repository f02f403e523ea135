# vspilot/core/anthropic_client.py
import logging
from typing import Any, Dict, List, Optional

from .llm_client import ChatMessage, LlmClient

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"

class AnthropicClient(LlmClient):
    """
    Handles communication with the Anthropic (Claude) Messages API.

    Reuses the retry and error mapping of LlmClient and only changes the wire
    format: the API key travels in `x-api-key`, the system prompt is a top-level
    `system` field rather than a message, `max_tokens` is mandatory, and the
    answer is read from `content[0].text`.
    """
    provider_label = "Anthropic"

    def __init__(self, api_key: str, model: str, api_base: Optional[str] = None, default_max_tokens: int = 2000, **kwargs):
        """
        Args:
            api_key: The Anthropic API key.
            model: The Claude model identifier (e.g., "claude-3-5-sonnet-latest").
            api_base: Optional override of the Messages endpoint URL.
            default_max_tokens: Used when `chat` is called without max_tokens.
        """
        super().__init__(api_key, model, api_base=api_base or ANTHROPIC_MESSAGES_URL,
                         extra_headers={"anthropic-version": ANTHROPIC_API_VERSION}, **kwargs)
        self.default_max_tokens = default_max_tokens

    def _build_headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key}

    def _build_payload(self, messages: List[ChatMessage], temperature: float, max_tokens: Optional[int]) -> Dict[str, Any]:
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        conversation = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": conversation,
            "max_tokens": max_tokens if max_tokens is not None else self.default_max_tokens,
            "temperature": temperature,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    def _parse_response(self, data: Any) -> str:
        if not isinstance(data, dict) or not isinstance(data.get("content"), list) or not data["content"]:
            raise ValueError("'content' array is missing or empty.")
        texts = [block.get("text", "") for block in data["content"] if isinstance(block, dict) and block.get("type", "text") == "text"]
        if not texts:
            raise ValueError("Response contained no text blocks.")
        return texts[0]
