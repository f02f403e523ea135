# vspilot/core/openai_client.py
import logging
from typing import List, Optional

try:
    from openai import OpenAI, RateLimitError as OpenAIRateLimitError, AuthenticationError as OpenAIAuthenticationError
except ImportError:
    raise ImportError("The 'openai' package is required to use the OpenAIClient. Please install it with 'pip install openai'.")

from .llm_client import RateLimitError, AuthenticationError, ChatMessage, filter_valid_messages

logger = logging.getLogger(__name__)

class OpenAIClient:
    """
    Handles communication with the OpenAI chat completions API using the official openai SDK.
    """
    provider_label = "OpenAI"

    def __init__(self, api_key: str, model: str, api_base: Optional[str] = None, **kwargs):
        """
        Initializes the OpenAI client.

        Args:
            api_key: The OpenAI API key.
            model: The OpenAI model identifier (e.g., "gpt-4").
            api_base: Optional base URL for the API endpoint, for proxies or custom deployments.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError("OpenAIClient requires a valid string API key.")
        if not model or not isinstance(model, str):
            raise ValueError("OpenAIClient requires a valid string model ID.")

        self.model_id = model
        try:
            self.client = OpenAI(api_key=api_key, base_url=api_base)
            logger.info(f"OpenAIClient instance created for model '{self.model_id}'.")
        except Exception as e:
            logger.exception("Failed to configure OpenAI client.")
            raise RuntimeError(f"Failed to initialize OpenAI client: {e}") from e

    def chat(self, messages: List[ChatMessage], temperature: float = 0.7, max_tokens: Optional[int] = None) -> ChatMessage:
        """
        Sends a chat completion request to the OpenAI API.

        Args:
            messages: The conversation, including any system prompt.
            temperature: The sampling temperature for the model's response.
            max_tokens: Optional upper bound on generated tokens.

        Returns:
            A ChatMessage dictionary containing the assistant's response.

        Raises:
            RateLimitError: If the API rate limit is exceeded.
            AuthenticationError: If the API key is invalid.
            RuntimeError: For other unexpected API or processing errors.
        """
        valid_messages = filter_valid_messages(messages)
        request_args = {"model": self.model_id, "messages": valid_messages, "temperature": temperature}
        if max_tokens is not None:
            request_args["max_tokens"] = max_tokens

        try:
            logger.info(f"Sending request to OpenAI model '{self.model_id}'...")
            response = self.client.chat.completions.create(**request_args)

            if not response.choices:
                raise RuntimeError("OpenAI response contained no choices.")

            content = response.choices[0].message.content
            logger.info(f"Response received successfully from OpenAI model {self.model_id}.")
            return {"role": "assistant", "content": content.strip() if content else ""}
        except OpenAIRateLimitError as e:
            raise RateLimitError(f"OpenAI API Rate Limit Exceeded: {e}") from e
        except OpenAIAuthenticationError as e:
            logger.error(f"OpenAI API Authentication Failed. Base URL: {self.client.base_url}. Error: {e}")
            raise AuthenticationError(f"OpenAI API Authentication Failed: {e}") from e
        except RuntimeError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during API call to OpenAI: {e}")
            raise RuntimeError(f"Unexpected error during API call to OpenAI: {e}") from e
