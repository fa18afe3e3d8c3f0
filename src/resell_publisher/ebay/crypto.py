"""Token vault: encryption of eBay OAuth tokens at rest.

Tokens are sealed with AES-256-GCM. Each stored value is
``base64(iv || tag || ciphertext)`` with a fresh 16-byte IV per call, so
encrypting the same token twice never yields the same value.
"""

import base64
import binascii
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from resell_publisher.config import Settings, get_settings
from resell_publisher.ebay.errors import ConfigFault, ErrorCode, TokenDecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
STATE_BYTES = 32


class TokenVault:
    """Authenticated symmetric encryption for OAuth tokens."""

    def __init__(self, key: bytes) -> None:
        """Initialize the vault.

        Args:
            key: 32-byte AES-256 key.

        Raises:
            ConfigFault: If the key has the wrong length.
        """
        if len(key) != KEY_LENGTH:
            raise ConfigFault(
                ErrorCode.ENCRYPTION_NOT_CONFIGURED,
                f"Token encryption key must be {KEY_LENGTH} bytes",
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TokenVault":
        """Build a vault from the configured hex key.

        Args:
            settings: Settings to read (uses global settings if not provided).

        Raises:
            ConfigFault: If EBAY_TOKEN_ENCRYPTION_KEY is unset or not 64 hex chars.
        """
        settings = settings or get_settings()
        key_hex = settings.ebay_token_encryption_key
        if not key_hex:
            raise ConfigFault(
                ErrorCode.ENCRYPTION_NOT_CONFIGURED,
                "EBAY_TOKEN_ENCRYPTION_KEY is not set",
            )
        if len(key_hex) != KEY_LENGTH * 2:
            raise ConfigFault(
                ErrorCode.ENCRYPTION_NOT_CONFIGURED,
                "EBAY_TOKEN_ENCRYPTION_KEY must be 64 hex characters",
            )
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigFault(
                ErrorCode.ENCRYPTION_NOT_CONFIGURED,
                "EBAY_TOKEN_ENCRYPTION_KEY must be 64 hex characters",
            ) from e
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token for storage.

        Args:
            plaintext: The token to seal.

        Returns:
            base64(iv || tag || ciphertext).
        """
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a stored token.

        Args:
            encrypted: Value produced by ``encrypt``.

        Returns:
            The original plaintext.

        Raises:
            TokenDecryptionError: If the value is malformed or fails authentication.
        """
        try:
            raw = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TokenDecryptionError("Stored token is not valid base64") from e

        if len(raw) < IV_LENGTH + TAG_LENGTH:
            raise TokenDecryptionError("Stored token is truncated")

        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + TAG_LENGTH :]
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("Token decryption failed: authentication tag mismatch")
            raise TokenDecryptionError() from e
        return plaintext.decode("utf-8")

    @staticmethod
    def generate_oauth_state() -> str:
        """Generate a CSRF state value for the OAuth redirect.

        Returns:
            64 hex characters (32 random bytes).
        """
        return secrets.token_hex(STATE_BYTES)


def generate_encryption_key() -> str:
    """Generate a new 64-hex-character key for EBAY_TOKEN_ENCRYPTION_KEY."""
    return secrets.token_hex(KEY_LENGTH)


# Global vault instance
_token_vault: TokenVault | None = None


def get_token_vault() -> TokenVault:
    """Get the global token vault instance.

    Returns:
        TokenVault instance.

    Raises:
        ConfigFault: If the encryption key is not configured.
    """
    global _token_vault
    if _token_vault is None:
        _token_vault = TokenVault.from_settings()
    return _token_vault
