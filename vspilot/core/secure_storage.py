# vspilot/core/secure_storage.py
import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# All VSPilot credentials are grouped under one keyring service name.
SERVICE_NAME = "VSPilot"

# Identifiers of the provider API keys kept in secure storage.
OPENAI_API_KEY = "OPENAI_API_KEY"
ANTHROPIC_API_KEY = "ANTHROPIC_API_KEY"


def store_credential(key: str, secret: str) -> None:
    """
    Stores a secret securely using the OS credential manager (keyring).

    Args:
        key: The identifier for the secret (e.g., "OPENAI_API_KEY").
        secret: The actual secret value to store.

    Raises:
        ValueError: If the key or secret is invalid (empty).
        RuntimeError: If keyring fails to store the credential (backend issue).
    """
    if not isinstance(key, str) or not key:
        logger.error("Attempted to store credential with invalid key.")
        raise ValueError("Credential key cannot be empty.")
    if not isinstance(secret, str):
        logger.error("Attempted to store non-string credential secret.")
        raise ValueError("Credential secret must be a string.")

    secret_stripped = secret.strip()
    if not secret_stripped:
        logger.error("Attempted to store empty credential secret after stripping.")
        raise ValueError("Credential secret cannot be empty after stripping.")

    try:
        keyring.set_password(SERVICE_NAME, key, secret_stripped)
        logger.info(f"Stored credential for key '{key}' securely.")
    except KeyringError as e:
        logger.exception(f"Failed to store credential securely for key '{key}'. Keyring backend might be misconfigured or unavailable.")
        raise RuntimeError(f"Secure storage unavailable: {e}") from e


def retrieve_credential(key: str) -> Optional[str]:
    """
    Retrieves a secret from the OS credential manager (keyring).

    Returns:
        The stripped secret, or None if it is missing, blank, or the backend is unavailable.

    Raises:
        ValueError: If the key is invalid (empty).
    """
    if not isinstance(key, str) or not key:
        logger.error("Attempted to retrieve credential with invalid key.")
        raise ValueError("Credential key cannot be empty.")

    try:
        secret = keyring.get_password(SERVICE_NAME, key)
    except KeyringError:
        # A missing key is an expected state, so an unusable backend is only a warning.
        logger.warning(f"Failed to retrieve credential securely for key '{key}'. Keyring backend might be misconfigured or unavailable.")
        return None

    if not secret:
        logger.debug(f"No credential found for key '{key}' in secure storage.")
        return None
    secret_stripped = secret.strip()
    if not secret_stripped:
        logger.warning(f"Credential retrieved for key '{key}' was empty after stripping. Treating as not found.")
        return None
    return secret_stripped


def delete_credential(key: str) -> bool:
    """
    Deletes a secret from the OS credential manager (keyring).

    Returns:
        True if the key is gone afterwards (deleted or never existed), False on backend error.

    Raises:
        ValueError: If the key is invalid (empty).
    """
    if not isinstance(key, str) or not key:
        logger.error("Attempted to delete credential with invalid key.")
        raise ValueError("Credential key cannot be empty.")

    try:
        keyring.delete_password(SERVICE_NAME, key)
        logger.info(f"Deleted credential for key '{key}' from secure storage.")
        return True
    except PasswordDeleteError:
        logger.warning(f"Credential for key '{key}' not found during deletion attempt. Treating as success.")
        return True
    except KeyringError:
        logger.error(f"Failed to delete credential securely for key '{key}'. Keyring backend error.", exc_info=True)
        return False
