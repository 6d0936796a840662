"""
Segment Envelope Library

Per-segment envelope encryption for streamed media.

Overview
--------
Every media segment is sealed under its own one-time key:

- **Segment keys** are one-time AES-256 keys that encrypt a single segment
- **Envelopes** carry the wrapped segment key, its bound policy and the
  key-access authority (KAS) locator, in compact binary or manifest form
- **Policy evaluation** runs on every unwrap; nothing is cached

Quick Start
-----------
```python
import asyncio
from cryptography.hazmat.primitives.asymmetric import ec
from segment_envelope import (
    CompactKeyProvider,
    EntitlementContext,
    MediaDRMPolicy,
    SegmentEncryptor,
    StaticPolicyEvaluator,
)

async def main():
    kas_key = ec.generate_private_key(ec.SECP256R1())
    provider = CompactKeyProvider(
        kas_locator="https://kas.example.com",
        kas_public_key=kas_key.public_key(),
        policy_evaluator=StaticPolicyEvaluator(allow=True),
        entitlement=EntitlementContext(subject="viewer-1"),
        kas_private_key=kas_key,
    )
    encryptor = SegmentEncryptor(provider, MediaDRMPolicy(), "https://cdn.example.com")

    # Encrypt one segment
    result = await encryptor.encrypt_segment(b"segment bytes", "asset-1", 0, 6.0)

    # Decrypt it again from payload + envelope header
    plaintext = await encryptor.decrypt_segment(
        result.payload, result.metadata.envelope_header
    )

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: Authenticated encryption with segment identity as AAD
- **Compact envelopes**: Binary header, ECDH (P-256) key agreement, optional ECDSA signature
- **Manifest envelopes**: JSON manifest, RSA-OAEP wrap, HMAC policy binding, KAS unwrap
- **Batch encryption**: Bounded concurrency, per-segment error isolation, input order kept
- **HLS playlists**: Master and media playlists with per-segment key directives
- **Memory Security**: Best-effort key zeroization after every operation

Modules
-------
- `crypto`: AES-256-GCM encryption primitives
- `header`: Compact binary envelope codec
- `manifest`: Manifest envelope codec
- `policy`: Policy records and the evaluation boundary
- `providers`: Segment key providers and the key-access authority boundary
- `encryptor`: Segment encryptor (single and batch)
- `metadata`: Segment metadata
- `playlist`: HLS playlist generation
- `config`: Environment configuration and logging setup
- `validation`: Input validation
- `errors`: Error types and exception classes
"""

__version__ = "0.1.0"

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    MAX_SEGMENT_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedSegment,
    SecureKey,
    generate_random_bytes,
)

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    AuthenticationError,
    ConfigError,
    CryptoError,
    EnvelopeError,
    FormatError,
    InvalidInputError,
    KeyUnwrapError,
    PolicyDeniedError,
    SerializationError,
)

# ============================================================================
# Policy Exports
# ============================================================================

from .policy import (
    CallablePolicyEvaluator,
    DeviceSecurityLevel,
    EntitlementContext,
    EnvelopePolicy,
    HDCPLevel,
    MediaDRMPolicy,
    PolicyEvaluator,
    PolicyKind,
    RentalWindow,
    StaticPolicyEvaluator,
    remote_policy_locator,
)

# ============================================================================
# Envelope Codec Exports
# ============================================================================

from .header import (
    CompactEnvelope,
    decode_compact,
    encode_compact,
)

from .manifest import ManifestEnvelope

# ============================================================================
# Key Provider Exports
# ============================================================================

from .providers import (
    CompactKeyProvider,
    GeneratedSegmentKey,
    KeyAccessAuthority,
    KeyAccessRequest,
    KeyProviderStats,
    LocalKeyAccessAuthority,
    ManifestKeyProvider,
    SegmentKeyProvider,
    WrappedKeyEnvelope,
)

# ============================================================================
# Encryptor Exports (Primary API)
# ============================================================================

from .metadata import SegmentMetadata

from .encryptor import (
    EncryptedSegmentResult,
    SegmentEncryptor,
    SegmentOutcome,
    segment_aad,
)

# ============================================================================
# Playlist and Configuration Exports
# ============================================================================

from .playlist import HLSPlaylistGenerator, PlaylistVariant
from .config import SegmentEnvelopeConfig, configure_logging

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "MAX_SEGMENT_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedSegment",
    "SecureKey",
    "generate_random_bytes",
    # Errors
    "EnvelopeError",
    "FormatError",
    "InvalidInputError",
    "CryptoError",
    "AuthenticationError",
    "KeyUnwrapError",
    "PolicyDeniedError",
    "SerializationError",
    "ConfigError",
    # Policy
    "MediaDRMPolicy",
    "RentalWindow",
    "HDCPLevel",
    "DeviceSecurityLevel",
    "PolicyKind",
    "EnvelopePolicy",
    "EntitlementContext",
    "PolicyEvaluator",
    "StaticPolicyEvaluator",
    "CallablePolicyEvaluator",
    "remote_policy_locator",
    # Envelope codecs
    "CompactEnvelope",
    "encode_compact",
    "decode_compact",
    "ManifestEnvelope",
    # Key providers
    "SegmentKeyProvider",
    "CompactKeyProvider",
    "ManifestKeyProvider",
    "KeyAccessAuthority",
    "LocalKeyAccessAuthority",
    "KeyAccessRequest",
    "GeneratedSegmentKey",
    "KeyProviderStats",
    "WrappedKeyEnvelope",
    # Encryptor (Primary API)
    "SegmentEncryptor",
    "EncryptedSegmentResult",
    "SegmentOutcome",
    "SegmentMetadata",
    "segment_aad",
    # Playlists and configuration
    "HLSPlaylistGenerator",
    "PlaylistVariant",
    "SegmentEnvelopeConfig",
    "configure_logging",
]
