"""
Secret encryption for backend credentials.

Secret env values are stored as AES-256-GCM tokens: a random 12-byte nonce
followed by the ciphertext, base64 encoded. The master key lives in the OS
keyring and is created on first use.
"""

import base64
import binascii
import os
from typing import Optional

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from keyring.errors import KeyringError

from mcp_toolkit.core.exceptions import ConfigError, SecurityError
from mcp_toolkit.utils.config import ToolkitConfig
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12

# Well-known key for automated tests; never valid in production.
TEST_KEY = bytes(range(1, KEY_SIZE + 1))


class SecretManager:
    """Encrypts and decrypts secret values with a fixed master key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise SecurityError(
                f"Master key must be {KEY_SIZE} bytes, got {len(key)}",
                error_code="INVALID_KEY",
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a value into an opaque base64 token."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by :meth:`encrypt`.

        Raises:
            SecurityError: If the token is malformed, was produced with another
                key, or has been tampered with.
        """
        try:
            combined = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise SecurityError("Secret is not valid base64", error_code="DECRYPT_FAILED") from e

        if len(combined) < NONCE_SIZE:
            raise SecurityError("Secret token too short", error_code="DECRYPT_FAILED")

        nonce, ciphertext = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise SecurityError("Secret failed authentication", error_code="DECRYPT_FAILED") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SecurityError("Decrypted secret is not UTF-8", error_code="DECRYPT_FAILED") from e


def get_or_create_master_key(config: ToolkitConfig) -> bytes:
    """
    Load the master key from the keyring, generating it on first use.

    The fixed test key is returned instead only when test mode is enabled
    outside production.

    Raises:
        ConfigError: If test mode is requested in production.
        SecurityError: If the keyring is unavailable or holds a bad key.
    """
    if config.test_mode:
        if not config.test_key_allowed:
            raise ConfigError("Test mode is not allowed in production", error_code="TEST_MODE_FORBIDDEN")
        logger.warning("Using fixed test encryption key")
        return TEST_KEY

    service = config.keyring.service
    account = config.keyring.account

    try:
        stored: Optional[str] = keyring.get_password(service, account)
    except KeyringError as e:
        raise SecurityError(
            f"Could not read master key from keyring: {e}",
            error_code="KEYRING_UNAVAILABLE",
        ) from e

    if stored:
        try:
            key = base64.b64decode(stored.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise SecurityError("Stored master key is not valid base64", error_code="INVALID_KEY") from e
        if len(key) != KEY_SIZE:
            raise SecurityError(
                f"Stored master key has length {len(key)}, expected {KEY_SIZE}",
                error_code="INVALID_KEY",
            )
        return key

    key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
    try:
        keyring.set_password(service, account, base64.b64encode(key).decode("ascii"))
    except KeyringError as e:
        raise SecurityError(
            f"Could not store master key in keyring: {e}",
            error_code="KEYRING_UNAVAILABLE",
        ) from e

    logger.info(f"Created new master encryption key in keyring service '{service}'")
    return key


def create_secret_manager(config: ToolkitConfig) -> SecretManager:
    return SecretManager(get_or_create_master_key(config))
