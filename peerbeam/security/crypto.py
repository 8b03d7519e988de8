"""
Security module: AES-256-GCM session encryption.

Session keys are random, held in memory only and exchanged over the
channel in base64 form. The lobby key is the one exception: it is derived
from a shared passphrase with PBKDF2 so every client arrives at the same key.

Sealed payloads are laid out as nonce (12 bytes) || ciphertext || tag (16 bytes).
"""

import base64
import binascii
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from peerbeam.config import (
    ENCRYPTION_DISABLED,
    KEY_DERIVATION_ITERATIONS,
    KEY_DERIVATION_SALT,
)
from peerbeam.errors import CryptoUnavailable, DecryptionFailed

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
TAG_SIZE = 16
# AES-256 key size
KEY_SIZE = 32


@lru_cache(maxsize=1)
def _backend_supports_aesgcm() -> bool:
    """Seal one empty message to check the backend actually offers AES-GCM."""
    try:
        AESGCM(AESGCM.generate_key(bit_length=KEY_SIZE * 8)).encrypt(
            os.urandom(NONCE_SIZE), b"", None
        )
    except UnsupportedAlgorithm as e:
        logger.warning(f"AES-GCM not supported by the crypto backend: {e}")
        return False
    return True


def is_crypto_available() -> bool:
    """True when session encryption can be used in this runtime."""
    if ENCRYPTION_DISABLED:
        return False
    return _backend_supports_aesgcm()


def _require_crypto() -> None:
    if not is_crypto_available():
        raise CryptoUnavailable("AES-GCM encryption is not available; running unencrypted")


def generate_key() -> bytes:
    """Generate a random 256-bit session key."""
    _require_crypto()
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def derive_key(
    passphrase: str,
    salt: bytes = KEY_DERIVATION_SALT,
    iterations: int = KEY_DERIVATION_ITERATIONS,
) -> bytes:
    """
    Derive a 256-bit key from a passphrase (PBKDF2-HMAC-SHA256).

    Only meant for secrets shared by every client, such as the lobby chat.
    Session keys always come from generate_key().
    """
    _require_crypto()
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def export_key(key: bytes) -> str:
    """Encode a raw key as base64 for transmission."""
    return base64.b64encode(key).decode("ascii")


def import_key(key_string: str) -> bytes:
    """Decode a base64 key received from a peer."""
    key = base64.b64decode(key_string, validate=True)
    if len(key) != KEY_SIZE:
        raise ValueError(f"Expected a {KEY_SIZE}-byte key, got {len(key)} bytes")
    return key


def encrypt_bytes(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt binary data using AES-256-GCM.

    Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, None)
    return nonce + ciphertext


def decrypt_bytes(data: bytes, key: bytes) -> bytes:
    """
    Decrypt binary data encrypted with AES-256-GCM.

    Raises DecryptionFailed instead of returning garbled output.
    """
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailed("Ciphertext is too short")
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionFailed("Authentication tag mismatch") from e


def encrypt_string(plaintext: str, key: bytes) -> str:
    """Encrypt text; the result is base64 so it can travel inside JSON."""
    sealed = encrypt_bytes(plaintext.encode("utf-8"), key)
    return base64.b64encode(sealed).decode("ascii")


def decrypt_string(encrypted: str, key: bytes) -> str:
    """Reverse encrypt_string()."""
    try:
        sealed = base64.b64decode(encrypted, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailed("Ciphertext is not valid base64") from e
    plaintext = decrypt_bytes(sealed, key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailed("Decrypted payload is not UTF-8 text") from e
