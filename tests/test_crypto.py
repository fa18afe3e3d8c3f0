"""Tests for the token vault."""

import base64

import pytest

from resell_publisher.ebay.crypto import (
    IV_LENGTH,
    TAG_LENGTH,
    TokenVault,
    generate_encryption_key,
)
from resell_publisher.ebay.errors import ConfigFault, ErrorCode, TokenDecryptionError


class TestTokenVault:
    """Tests for token encryption and decryption."""

    def test_round_trip(self, vault):
        """Test decrypting returns the original token."""
        token = "v^1.1#i^1#p^3#r^1#I^3#f^0#t^H4sIAAAAAAAAAOVZf2wbVx0="

        assert vault.decrypt(vault.encrypt(token)) == token

    def test_round_trip_unicode(self, vault):
        """Test non-ASCII plaintext survives encryption."""
        assert vault.decrypt(vault.encrypt("tökén-✓")) == "tökén-✓"

    def test_encryption_is_not_deterministic(self, vault):
        """Test the same plaintext never produces the same ciphertext."""
        first = vault.encrypt("same-token")
        second = vault.encrypt("same-token")

        assert first != second
        assert vault.decrypt(first) == vault.decrypt(second) == "same-token"

    def test_stored_layout(self, vault):
        """Test the stored value is base64 of iv, tag and ciphertext."""
        raw = base64.b64decode(vault.encrypt("abcd"))

        assert len(raw) == IV_LENGTH + TAG_LENGTH + len("abcd")

    def test_tampered_ciphertext_fails(self, vault):
        """Test flipping one ciphertext bit fails authentication."""
        raw = bytearray(base64.b64decode(vault.encrypt("secret-token")))
        raw[-1] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(TokenDecryptionError) as exc_info:
            vault.decrypt(tampered)
        assert exc_info.value.code == ErrorCode.DECRYPTION_FAILED.value

    def test_tampered_tag_fails(self, vault):
        """Test flipping one tag bit fails authentication."""
        raw = bytearray(base64.b64decode(vault.encrypt("secret-token")))
        raw[IV_LENGTH] ^= 0x80
        tampered = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(TokenDecryptionError):
            vault.decrypt(tampered)

    def test_wrong_key_fails(self, vault):
        """Test a value sealed with another key cannot be read."""
        other = TokenVault(bytes.fromhex(generate_encryption_key()))

        with pytest.raises(TokenDecryptionError):
            other.decrypt(vault.encrypt("secret-token"))

    def test_truncated_value_fails(self, vault):
        """Test a value shorter than iv plus tag is rejected."""
        short = base64.b64encode(b"x" * (IV_LENGTH + TAG_LENGTH - 1)).decode("ascii")

        with pytest.raises(TokenDecryptionError):
            vault.decrypt(short)

    def test_invalid_base64_fails(self, vault):
        """Test garbage input is rejected."""
        with pytest.raises(TokenDecryptionError):
            vault.decrypt("not base64 !!")

    def test_wrong_key_length_rejected(self):
        """Test the vault requires a 32-byte key."""
        with pytest.raises(ConfigFault):
            TokenVault(b"too-short")


class TestVaultFromSettings:
    """Tests for building the vault from configuration."""

    def test_from_settings(self, test_settings):
        """Test a valid hex key builds a working vault."""
        vault = TokenVault.from_settings(test_settings)

        assert vault.decrypt(vault.encrypt("token")) == "token"

    @pytest.mark.parametrize("key", ["", "abcd", "zz" * 32])
    def test_invalid_key_raises_config_fault(self, test_settings, key):
        """Test a missing, short or non-hex key is a configuration error."""
        settings = test_settings.model_copy(update={"ebay_token_encryption_key": key})

        with pytest.raises(ConfigFault) as exc_info:
            TokenVault.from_settings(settings)
        assert exc_info.value.code == ErrorCode.ENCRYPTION_NOT_CONFIGURED.value

    def test_generated_key_format(self):
        """Test generated keys are 64 hex characters."""
        key = generate_encryption_key()

        assert len(key) == 64
        assert bytes.fromhex(key)


class TestOAuthState:
    """Tests for OAuth state generation."""

    def test_state_format(self):
        """Test states are 64 hex characters."""
        state = TokenVault.generate_oauth_state()

        assert len(state) == 64
        int(state, 16)

    def test_states_are_unique(self):
        """Test 1000 generated states never collide."""
        states = {TokenVault.generate_oauth_state() for _ in range(1000)}

        assert len(states) == 1000
