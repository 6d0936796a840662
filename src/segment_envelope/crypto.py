"""
Cryptographic primitives for AES-256-GCM segment encryption.

This module provides:
- SecureKey: One-time segment key wrapper with explicit and automatic zeroization
- EncryptedSegment: Ciphertext, nonce and tag of one encrypted segment
- AesGcmCipher: AES-256-GCM encryption/decryption operations
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationError, CryptoError, InvalidInputError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)
MAX_SEGMENT_SIZE: int = 100 * 1024 * 1024  # 100 MiB


class SecureKey:
    """
    Secure key wrapper with memory cleanup.

    Uses bytearray internally so the key can be zeroed in place, either
    explicitly through wipe() / the context manager, or on deletion.
    Python's garbage collector doesn't guarantee immediate cleanup, and
    AESGCM keeps its own copy, so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Create a SecureKey from raw bytes.

        Args:
            key_bytes: Raw key material (32 bytes for AES-256)
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    @property
    def is_wiped(self) -> bool:
        """True once the key material has been zeroed."""
        return not any(self._bytes)

    def wipe(self) -> None:
        """Zero the key material in place."""
        for i in range(len(self._bytes)):
            self._bytes[i] = 0

    def __enter__(self) -> SecureKey:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __len__(self) -> int:
        """Return key length in bytes."""
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            self.wipe()


@dataclass(frozen=True)
class EncryptedSegment:
    """
    One encrypted segment: ciphertext, nonce and authentication tag.

    len(ciphertext) always equals the plaintext length; the tag is kept apart
    so delivery formats can choose where to carry it.
    """

    ciphertext: bytes
    nonce: bytes  # 12 bytes
    tag: bytes  # 16 bytes

    def to_payload(self) -> bytes:
        """Delivery blob layout: ciphertext || tag."""
        return self.ciphertext + self.tag

    @classmethod
    def from_payload(cls, payload: bytes, nonce: bytes) -> EncryptedSegment:
        """
        Split a ciphertext || tag delivery blob.

        Args:
            payload: Encrypted segment payload, tag last
            nonce: Nonce the payload was sealed under

        Returns:
            EncryptedSegment instance

        Raises:
            InvalidInputError: If payload cannot contain a tag
        """
        if len(payload) < TAG_SIZE:
            raise InvalidInputError(
                f"Encrypted payload too small: expected at least {TAG_SIZE} bytes, got {len(payload)}"
            )
        split = len(payload) - TAG_SIZE
        return cls(ciphertext=bytes(payload[:split]), nonce=bytes(nonce), tag=bytes(payload[split:]))

    def to_aead_blob(self) -> bytes:
        """
        Convert to AEAD blob format: nonce || ciphertext || tag.

        For AES-256-GCM wrapping a 32-byte key: 12 + 32 + 16 = 60 bytes total.
        """
        return self.nonce + self.ciphertext + self.tag

    @classmethod
    def from_aead_blob(cls, blob: bytes) -> EncryptedSegment:
        """
        Parse from AEAD blob format: nonce || ciphertext || tag.

        Raises:
            InvalidInputError: If blob is too small
        """
        min_size = NONCE_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise InvalidInputError(
                f"AEAD blob too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls.from_payload(blob[NONCE_SIZE:], blob[:NONCE_SIZE])


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Provides static methods for encryption and decryption with optional
    Additional Authenticated Data (AAD) for binding segment identity.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> EncryptedSegment:
        """
        Encrypt plaintext with AES-256-GCM under a fresh random nonce.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt (may be empty)
            aad: Optional Additional Authenticated Data for binding

        Returns:
            EncryptedSegment with ciphertext, nonce and tag

        Raises:
            CryptoError: If key size is invalid or encryption fails
        """
        _check_key(key)

        nonce = generate_random_bytes(NONCE_SIZE)
        aesgcm = AESGCM(key.as_bytes())

        try:
            sealed = aesgcm.encrypt(nonce, bytes(plaintext), aad)
        except (OverflowError, ValueError) as e:
            raise CryptoError(f"Encryption error: {e}") from e

        split = len(sealed) - TAG_SIZE
        return EncryptedSegment(ciphertext=sealed[:split], nonce=nonce, tag=sealed[split:])

    @staticmethod
    def decrypt(
        key: SecureKey,
        segment: EncryptedSegment,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt and authenticate with AES-256-GCM.

        Args:
            key: 32-byte decryption key
            segment: EncryptedSegment with ciphertext, nonce and tag
            aad: Optional Additional Authenticated Data (must match encryption)

        Returns:
            Decrypted plaintext bytes

        Raises:
            CryptoError: If key or nonce size is invalid
            InvalidInputError: If the tag has the wrong size
            AuthenticationError: If the tag does not verify
        """
        _check_key(key)

        if len(segment.nonce) != NONCE_SIZE:
            raise CryptoError(
                f"Invalid nonce size: expected {NONCE_SIZE}, got {len(segment.nonce)}"
            )
        if len(segment.tag) != TAG_SIZE:
            raise InvalidInputError(
                f"Invalid tag size: expected {TAG_SIZE}, got {len(segment.tag)}"
            )

        aesgcm = AESGCM(key.as_bytes())

        try:
            return aesgcm.decrypt(segment.nonce, segment.ciphertext + segment.tag, aad)
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise AuthenticationError("Decryption failed") from None

    @classmethod
    def decrypt_payload(
        cls,
        key: SecureKey,
        payload: bytes,
        nonce: bytes,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """Decrypt a ciphertext || tag delivery blob."""
        return cls.decrypt(key, EncryptedSegment.from_payload(payload, nonce), aad)


def _check_key(key: SecureKey) -> None:
    if len(key) != AES_256_KEY_SIZE:
        raise CryptoError(
            f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
        )


def generate_random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of bytes to generate

    Returns:
        Random bytes of specified length
    """
    return secrets.token_bytes(length)
