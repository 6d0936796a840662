"""
Exception classes for segment envelope operations.

Every failure surfaced by this package is an EnvelopeError. The subclasses map
one-to-one onto the distinct playback-failure states a caller needs to tell
apart (bad header, bad input, tampered payload, denied entitlement, failed
key recovery).
"""

from __future__ import annotations


class EnvelopeError(Exception):
    """Base exception for all segment envelope operations."""

    pass


class FormatError(EnvelopeError):
    """Envelope header or manifest is malformed, truncated or unrecognized."""

    pass


class InvalidInputError(EnvelopeError):
    """Caller-supplied value violates a size or shape precondition."""

    pass


class CryptoError(EnvelopeError):
    """Cryptographic primitive was misused (key size, nonce size)."""

    pass


class AuthenticationError(CryptoError):
    """AEAD tag verification failed. No plaintext is ever returned."""

    pass


class KeyUnwrapError(CryptoError):
    """Envelope is well-formed but the segment key could not be recovered."""

    pass


class PolicyDeniedError(EnvelopeError):
    """Policy evaluation rejected the unwrap request."""

    pass


class SerializationError(EnvelopeError):
    """Serialization or deserialization error."""

    pass


class ConfigError(EnvelopeError):
    """Configuration error."""

    pass
