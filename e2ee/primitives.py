"""
Cryptographic Primitives for the Envelope Layer

This module provides the foundational operations every other part of the
envelope layer is built on: binary/text codecs, a secure randomness source
and an AES-256-GCM wrapper. It also holds the error taxonomy shared by the
whole package.
"""

import base64
import binascii
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32      # AES-256
NONCE_SIZE = 12    # AES-GCM IV
SALT_SIZE = 16
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class EntropyError(CryptoError):
    """No secure randomness source is available"""
    pass


class EncodingError(CryptoError, ValueError):
    """Malformed base64/hex/text input"""
    pass


class KeyFormatError(CryptoError, ValueError):
    """Imported key is malformed or does not match the expected algorithm"""
    pass


class EnvelopeFormatError(CryptoError, ValueError):
    """Envelope fields cannot be decoded"""
    pass


class WrapError(CryptoError):
    """Wrapping a message key failed"""
    pass


class UnwrapError(WrapError):
    """Unwrapping a message key failed (tampered, wrong salt or wrong keys)"""
    pass


class DecryptionError(CryptoError):
    """
    AEAD tag verification failed.

    Attributes:
        integrity_ok: Result of the stored-hash check made before decrypting,
            or None when no hash was involved
    """

    def __init__(self, message: str = "Decryption failed", integrity_ok=None):
        super().__init__(message)
        self.integrity_ok = integrity_ok


class IntegrityError(CryptoError):
    """Stored integrity hash does not match the ciphertext"""
    pass


class BackupRestoreError(CryptoError):
    """Wrong passphrase or corrupted backup; the two are indistinguishable"""
    pass


def random_bytes(length: int) -> bytes:
    """
    Read bytes from the operating system CSPRNG.

    Raises:
        EntropyError: If the platform has no usable randomness source
    """
    try:
        return os.urandom(length)
    except (NotImplementedError, OSError) as e:
        raise EntropyError(f"Secure randomness unavailable: {e}") from e


def generate_key() -> bytes:
    """Generate a fresh one-time AES-256 key"""
    return random_bytes(KEY_SIZE)


def generate_nonce() -> bytes:
    """Generate a random 12-byte AES-GCM nonce"""
    return random_bytes(NONCE_SIZE)


def generate_salt() -> bytes:
    """Generate a random 16-byte salt"""
    return random_bytes(SALT_SIZE)


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, associated_data: bytes = None) -> bytes:
    """
    Encrypt data using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        nonce: 12-byte nonce, never reused with the same key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        ciphertext + tag (16 bytes)
    """
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    return AESGCM(key).encrypt(nonce, plaintext, associated_data)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes = None) -> bytes:
    """
    Decrypt data using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        nonce: Nonce used for encryption
        ciphertext: Encrypted data + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If the key has the wrong size or the tag does not verify
    """
    if len(key) != KEY_SIZE:
        raise DecryptionError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionError("Ciphertext too short")
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(f"Nonce must be {NONCE_SIZE} bytes")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as e:
        raise DecryptionError("Decryption failed: authentication tag mismatch") from e


def b64encode(data: bytes) -> str:
    """Standard base64 with padding"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Inverse of b64encode; rejects non-alphabet characters"""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise EncodingError(f"Invalid base64 data: {e}") from e


def b64url_encode(data: bytes) -> str:
    """Unpadded base64url, as used by JWK members"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    if not isinstance(text, str):
        raise EncodingError("base64url value must be a string")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Invalid base64url data: {e}") from e


def to_hex(data: bytes) -> str:
    return data.hex()


def from_hex(text: str) -> bytes:
    try:
        return bytes.fromhex(text)
    except (ValueError, TypeError) as e:
        raise EncodingError(f"Invalid hex data: {e}") from e


def text_to_bytes(text: str) -> bytes:
    return text.encode("utf-8")


def bytes_to_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncodingError(f"Data is not valid UTF-8: {e}") from e


def int_to_bytes(value: int, length: int = None) -> bytes:
    """Big-endian unsigned encoding; minimal length unless one is given"""
    if length is None:
        length = max(1, (value.bit_length() + 7) // 8)
    return value.to_bytes(length, "big")


def bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, "big")


def constant_time_compare(a, b) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string (or ASCII str)
        b: Second byte string (or ASCII str)

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
