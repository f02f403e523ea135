# vspilot/core/tests/test_anthropic_client.py
import pytest
from unittest.mock import MagicMock, patch

from vspilot.core.anthropic_client import ANTHROPIC_API_VERSION, ANTHROPIC_MESSAGES_URL, AnthropicClient
from vspilot.core.llm_client import AuthenticationError

# --- Test Fixtures ---

@pytest.fixture
def mock_requests_session():
    """Mocks requests.Session so that no real HTTP calls are made."""
    with patch('vspilot.core.llm_client.requests.Session') as mock_session_constructor:
        session = MagicMock()
        response = MagicMock(status_code=200)
        response.json.return_value = {"content": [{"type": "text", "text": "  Hello from Claude!  "}]}
        session.post.return_value = response
        mock_session_constructor.return_value = session
        yield session


@pytest.fixture
def client(mock_requests_session: MagicMock) -> AnthropicClient:
    return AnthropicClient(api_key="fake-anthropic-key", model="claude-3-5-sonnet-latest")


# --- Test Cases ---

class TestAnthropicClientInitialization:

    def test_init_success(self, client: AnthropicClient, mock_requests_session: MagicMock):
        assert client.api_endpoint == ANTHROPIC_MESSAGES_URL
        assert client.model == "claude-3-5-sonnet-latest"
        mock_requests_session.headers.update.assert_called_with({"anthropic-version": ANTHROPIC_API_VERSION})

    @pytest.mark.parametrize("api_key", [None, "", 123])
    def test_init_invalid_api_key_fails(self, api_key):
        with pytest.raises(ValueError, match="AnthropicClient requires a valid string API key"):
            AnthropicClient(api_key=api_key, model="claude-3-5-sonnet-latest")


class TestAnthropicClientChat:

    def test_system_prompt_is_sent_separately(self, client: AnthropicClient, mock_requests_session: MagicMock):
        """The system message becomes the top-level `system` field."""
        response = client.chat([
            {"role": "system", "content": "You are a bot."},
            {"role": "user", "content": "Hello"},
        ], temperature=0.2)

        call_kwargs = mock_requests_session.post.call_args.kwargs
        assert call_kwargs["headers"] == {"x-api-key": "fake-anthropic-key"}
        assert call_kwargs["json"] == {
            "model": "claude-3-5-sonnet-latest",
            "messages": [{"role": "user", "content": "Hello"}],
            "max_tokens": 2000,
            "temperature": 0.2,
            "system": "You are a bot.",
        }
        assert response == {"role": "assistant", "content": "Hello from Claude!"}

    def test_explicit_max_tokens(self, client: AnthropicClient, mock_requests_session: MagicMock):
        client.chat([{"role": "user", "content": "Hello"}], max_tokens=50)
        payload = mock_requests_session.post.call_args.kwargs["json"]
        assert payload["max_tokens"] == 50
        assert "system" not in payload

    @patch('time.sleep')
    def test_missing_content_is_invalid(self, mock_sleep, client: AnthropicClient, mock_requests_session: MagicMock):
        mock_requests_session.post.return_value.json.return_value = {"content": []}
        with pytest.raises(RuntimeError, match="Invalid response structure from Anthropic"):
            client.chat([{"role": "user", "content": "Hello"}])

    def test_authentication_error(self, client: AnthropicClient, mock_requests_session: MagicMock):
        response = MagicMock(status_code=401)
        response.json.return_value = {"error": {"message": "invalid x-api-key"}}
        mock_requests_session.post.return_value = response

        with pytest.raises(AuthenticationError, match="invalid x-api-key"):
            client.chat([{"role": "user", "content": "Hello"}])
