# vspilot/core/tests/test_secure_storage.py
import pytest
from unittest.mock import patch, MagicMock
from keyring.errors import KeyringError, PasswordDeleteError

from vspilot.core.secure_storage import (
    SERVICE_NAME,
    delete_credential,
    retrieve_credential,
    store_credential,
)

# --- Test Cases for store_credential ---

@patch("vspilot.core.secure_storage.keyring")
def test_store_credential_success(mock_keyring: MagicMock):
    """Secrets are stored stripped, under the VSPilot service name."""
    store_credential("OPENAI_API_KEY", "  sk-secret  ")
    mock_keyring.set_password.assert_called_once_with(SERVICE_NAME, "OPENAI_API_KEY", "sk-secret")

@pytest.mark.parametrize("key, secret, message", [
    ("", "secret", "Credential key cannot be empty."),
    (None, "secret", "Credential key cannot be empty."),
    ("key", None, "Credential secret must be a string."),
    ("key", "   ", "Credential secret cannot be empty after stripping."),
])
@patch("vspilot.core.secure_storage.keyring")
def test_store_credential_invalid_input(mock_keyring: MagicMock, key, secret, message):
    with pytest.raises(ValueError, match=message):
        store_credential(key, secret)
    mock_keyring.set_password.assert_not_called()

@patch("vspilot.core.secure_storage.keyring")
def test_store_credential_keyring_error(mock_keyring: MagicMock):
    mock_keyring.set_password.side_effect = KeyringError("Backend unavailable")
    with pytest.raises(RuntimeError, match="Secure storage unavailable: Backend unavailable"):
        store_credential("key", "secret")

# --- Test Cases for retrieve_credential ---

@patch("vspilot.core.secure_storage.keyring")
def test_retrieve_credential_success(mock_keyring: MagicMock):
    mock_keyring.get_password.return_value = " sk-secret \n"
    assert retrieve_credential("OPENAI_API_KEY") == "sk-secret"
    mock_keyring.get_password.assert_called_once_with(SERVICE_NAME, "OPENAI_API_KEY")

@pytest.mark.parametrize("stored", [None, "", "   "])
@patch("vspilot.core.secure_storage.keyring")
def test_retrieve_credential_missing_or_blank(mock_keyring: MagicMock, stored):
    mock_keyring.get_password.return_value = stored
    assert retrieve_credential("ANTHROPIC_API_KEY") is None

@patch("vspilot.core.secure_storage.keyring")
def test_retrieve_credential_backend_error(mock_keyring: MagicMock):
    """An unusable backend reads as 'no credential'."""
    mock_keyring.get_password.side_effect = KeyringError("locked")
    assert retrieve_credential("OPENAI_API_KEY") is None

def test_retrieve_credential_invalid_key():
    with pytest.raises(ValueError, match="Credential key cannot be empty."):
        retrieve_credential("")

# --- Test Cases for delete_credential ---

@patch("vspilot.core.secure_storage.keyring")
def test_delete_credential_success(mock_keyring: MagicMock):
    assert delete_credential("OPENAI_API_KEY") is True
    mock_keyring.delete_password.assert_called_once_with(SERVICE_NAME, "OPENAI_API_KEY")

@patch("vspilot.core.secure_storage.keyring")
def test_delete_missing_credential_counts_as_success(mock_keyring: MagicMock):
    mock_keyring.delete_password.side_effect = PasswordDeleteError("not found")
    assert delete_credential("OPENAI_API_KEY") is True

@patch("vspilot.core.secure_storage.keyring")
def test_delete_credential_backend_error(mock_keyring: MagicMock):
    mock_keyring.delete_password.side_effect = KeyringError("locked")
    assert delete_credential("OPENAI_API_KEY") is False
