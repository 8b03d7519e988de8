"""Tests for the security module - session keys and AES-GCM sealing."""

import base64

import pytest

from peerbeam.errors import CryptoUnavailable, DecryptionFailed
from peerbeam.security import crypto
from peerbeam.security.crypto import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    decrypt_bytes,
    decrypt_string,
    derive_key,
    encrypt_bytes,
    encrypt_string,
    export_key,
    generate_key,
    import_key,
    is_crypto_available,
)


class TestKeys:
    """Tests for key generation, derivation and transport encoding."""

    def test_generate_key_returns_32_bytes(self) -> None:
        """Session keys should be 256-bit."""
        assert len(generate_key()) == KEY_SIZE

    def test_generate_key_is_random(self) -> None:
        """Two generated keys should differ."""
        assert generate_key() != generate_key()

    def test_export_import_key(self) -> None:
        """A key should survive the base64 transport form."""
        key = generate_key()
        exported = export_key(key)
        assert isinstance(exported, str)
        assert import_key(exported) == key

    def test_import_key_wrong_length(self) -> None:
        """Keys that are not 32 bytes should be rejected."""
        with pytest.raises(ValueError):
            import_key(base64.b64encode(b"short").decode())

    def test_import_key_not_base64(self) -> None:
        """Garbage should be rejected rather than decoded leniently."""
        with pytest.raises(ValueError):
            import_key("not base64 at all!")

    def test_derive_key_deterministic(self) -> None:
        """Same passphrase should give the same key on every client."""
        assert derive_key("lobby secret", iterations=1000) == derive_key(
            "lobby secret", iterations=1000
        )

    def test_derive_key_different_passphrases(self) -> None:
        """Different passphrases should give different keys."""
        assert derive_key("a", iterations=1000) != derive_key("b", iterations=1000)

    def test_derive_key_length(self) -> None:
        """Derived keys should be 256-bit."""
        assert len(derive_key("secret", iterations=1000)) == KEY_SIZE


class TestAvailability:
    """Tests for the encryption availability switch."""

    def test_available_by_default(self) -> None:
        """The cryptography backend should offer AES-GCM."""
        assert is_crypto_available() is True

    def test_disabled_by_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Disabling encryption should make key generation fail."""
        monkeypatch.setattr(crypto, "ENCRYPTION_DISABLED", True)
        assert is_crypto_available() is False
        with pytest.raises(CryptoUnavailable):
            generate_key()
        with pytest.raises(CryptoUnavailable):
            derive_key("secret", iterations=1000)


class TestSealing:
    """Tests for encrypt/decrypt of bytes and text."""

    @pytest.fixture
    def key(self) -> bytes:
        return generate_key()

    def test_bytes_layout(self, key: bytes) -> None:
        """Output should be nonce || ciphertext || tag."""
        sealed = encrypt_bytes(b"hello", key)
        assert len(sealed) == NONCE_SIZE + len(b"hello") + TAG_SIZE

    def test_bytes_roundtrip(self, key: bytes) -> None:
        """Decrypting should return the plaintext bytes."""
        assert decrypt_bytes(encrypt_bytes(b"\x00\x01binary", key), key) == b"\x00\x01binary"

    def test_fresh_nonce_per_message(self, key: bytes) -> None:
        """The same plaintext should never produce the same ciphertext."""
        assert encrypt_bytes(b"same", key) != encrypt_bytes(b"same", key)

    def test_wrong_key_fails(self, key: bytes) -> None:
        """A different key should fail authentication."""
        sealed = encrypt_bytes(b"secret", key)
        with pytest.raises(DecryptionFailed):
            decrypt_bytes(sealed, generate_key())

    def test_tampered_ciphertext_fails(self, key: bytes) -> None:
        """A flipped bit should fail authentication."""
        sealed = bytearray(encrypt_bytes(b"secret", key))
        sealed[NONCE_SIZE] ^= 0x01
        with pytest.raises(DecryptionFailed):
            decrypt_bytes(bytes(sealed), key)

    def test_truncated_input_fails(self, key: bytes) -> None:
        """Input shorter than nonce plus tag should be rejected."""
        with pytest.raises(DecryptionFailed):
            decrypt_bytes(b"\x00" * (NONCE_SIZE + TAG_SIZE - 1), key)

    def test_string_roundtrip(self, key: bytes) -> None:
        """Unicode text should survive encryption."""
        sealed = encrypt_string("héllo 日本語", key)
        base64.b64decode(sealed, validate=True)
        assert decrypt_string(sealed, key) == "héllo 日本語"

    def test_string_bad_base64(self, key: bytes) -> None:
        """Text that is not base64 should raise DecryptionFailed."""
        with pytest.raises(DecryptionFailed):
            decrypt_string("%%%not-base64%%%", key)

    def test_string_non_utf8_plaintext(self, key: bytes) -> None:
        """Ciphertext of non-UTF-8 bytes should not decode as text."""
        sealed = base64.b64encode(encrypt_bytes(b"\xff\xfe\xfd", key)).decode()
        with pytest.raises(DecryptionFailed):
            decrypt_string(sealed, key)
