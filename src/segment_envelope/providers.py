"""
Segment key providers.

This module provides:
- SegmentKeyProvider: Interface for minting and recovering per-segment keys
- CompactKeyProvider: Compact header envelopes, ECDH (P-256) key agreement
- ManifestKeyProvider: Manifest envelopes, RSA-OAEP wrap, unwrap via a KAS
- KeyAccessAuthority / LocalKeyAccessAuthority: Key-access authority boundary
- GeneratedSegmentKey, KeyAccessRequest, KeyProviderStats

Key hierarchy:
- KAS key pair (long-lived, held by the key-access authority)
- Segment key (one-time, one per (asset_id, segment_index), never cached)
- Segment payload

Providers hold only immutable key objects plus lock-guarded counters, so a
single provider can serve concurrent generate/unwrap calls from a batch.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .crypto import AES_256_KEY_SIZE, AesGcmCipher, EncryptedSegment, SecureKey
from .errors import (
    AuthenticationError,
    InvalidInputError,
    KeyUnwrapError,
    PolicyDeniedError,
)
from .header import CompactEnvelope, signed_portion
from .manifest import DEFAULT_MIME_TYPE, ManifestEnvelope
from .policy import (
    EntitlementContext,
    EnvelopePolicy,
    MediaDRMPolicy,
    PolicyEvaluator,
    remote_policy_locator,
)
from .validation import validate_asset_id, validate_segment_index, validate_url

logger = logging.getLogger(__name__)

WrappedKeyEnvelope = Union[CompactEnvelope, ManifestEnvelope]

COMPACT_WRAP_INFO: bytes = b"segment-envelope/compact/wrap"
MIN_RSA_KEY_SIZE: int = 2048

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class GeneratedSegmentKey:
    """Result of generate_wrapped_key: the envelope to ship and the raw key."""

    envelope: WrappedKeyEnvelope
    key: SecureKey


@dataclass
class KeyProviderStats:
    """Provider counters."""

    keys_issued: int = 0
    unwrap_granted: int = 0
    unwrap_denied: int = 0
    unwrap_failed: int = 0


@dataclass(frozen=True)
class KeyAccessRequest:
    """What a key-access authority receives for one unwrap."""

    kas_url: str
    wrapped_key: bytes
    policy: EnvelopePolicy
    policy_binding: bytes
    asset_id: str
    segment_index: int
    entitlement: EntitlementContext
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def policy_binding(key: SecureKey, policy: bytes) -> bytes:
    """HMAC-SHA256 of the policy under the segment key."""
    return hmac.new(key.as_bytes(), policy, hashlib.sha256).digest()


def verify_policy_binding(key: SecureKey, policy: bytes, binding: bytes) -> bool:
    return hmac.compare_digest(policy_binding(key, policy), binding)


# =============================================================================
# Provider Interface
# =============================================================================


class SegmentKeyProvider(ABC):
    """
    Mints and recovers one-time segment keys.

    generate_wrapped_key and unwrap_key are template methods: input checks,
    counters and logging live here, the envelope-specific work lives in
    _generate / _unwrap.
    """

    def __init__(self) -> None:
        self._stats = KeyProviderStats()
        self._lock = asyncio.Lock()

    async def generate_wrapped_key(
        self,
        asset_id: str,
        segment_index: int,
        policy: MediaDRMPolicy,
    ) -> GeneratedSegmentKey:
        """
        Generate a fresh segment key bound to policy and segment identity.

        Args:
            asset_id: Asset identifier
            segment_index: Segment index within the asset
            policy: Rules bound into the envelope

        Returns:
            GeneratedSegmentKey with the envelope and the raw key

        Raises:
            InvalidInputError: If asset_id or segment_index is invalid
        """
        validate_asset_id(asset_id)
        validate_segment_index(segment_index)

        generated = await self._generate(asset_id, segment_index, policy)
        await self._count("keys_issued")
        logger.debug("Issued segment key for %s[%d]", asset_id, segment_index)
        return generated

    async def unwrap_key(self, envelope: WrappedKeyEnvelope) -> SecureKey:
        """
        Recover the segment key from an envelope.

        The bound policy is evaluated on every call; no decision is cached.

        Raises:
            PolicyDeniedError: If the policy evaluator or authority denies access
            KeyUnwrapError: If the envelope cannot be cryptographically opened
        """
        try:
            key = await self._unwrap(envelope)
        except PolicyDeniedError:
            await self._count("unwrap_denied")
            logger.warning(
                "Policy denied key for %s[%d]", envelope.asset_id, envelope.segment_index
            )
            raise
        except KeyUnwrapError as e:
            await self._count("unwrap_failed")
            logger.warning(
                "Key unwrap failed for %s[%d]: %s", envelope.asset_id, envelope.segment_index, e
            )
            raise

        await self._count("unwrap_granted")
        logger.debug("Unwrapped segment key for %s[%d]", envelope.asset_id, envelope.segment_index)
        return key

    async def stats(self) -> KeyProviderStats:
        """Snapshot of provider counters."""
        async with self._lock:
            return replace(self._stats)

    async def _count(self, name: str) -> None:
        async with self._lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)

    @abstractmethod
    async def _generate(
        self, asset_id: str, segment_index: int, policy: MediaDRMPolicy
    ) -> GeneratedSegmentKey:
        ...

    @abstractmethod
    async def _unwrap(self, envelope: WrappedKeyEnvelope) -> SecureKey:
        ...

    @abstractmethod
    def serialize_envelope(self, envelope: WrappedKeyEnvelope) -> str:
        """Text form stored in SegmentMetadata.envelope_header."""
        ...

    @abstractmethod
    def parse_envelope(self, header: str) -> WrappedKeyEnvelope:
        """
        Parse the text form without recovering any key.

        Raises:
            FormatError: If the header is malformed
        """
        ...


# =============================================================================
# Compact Provider (ECDH)
# =============================================================================


def _wrap_aad(kas_locator: str, asset_id: str, segment_index: int, policy: EnvelopePolicy) -> bytes:
    """Binds the wrapped key to its locator, segment identity and policy."""
    locator = kas_locator.encode("utf-8")
    asset = asset_id.encode("utf-8")
    return (
        struct.pack(">H", len(locator))
        + locator
        + struct.pack(">H", len(asset))
        + asset
        + struct.pack(">IB", segment_index, int(policy.kind))
        + hashlib.sha256(policy.body).digest()
    )


def _derive_wrapping_key(shared_secret: bytes, ephemeral_public_key: bytes) -> SecureKey:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=AES_256_KEY_SIZE,
        salt=ephemeral_public_key,
        info=COMPACT_WRAP_INFO,
    )
    return SecureKey(hkdf.derive(shared_secret))


class CompactKeyProvider(SegmentKeyProvider):
    """
    Compact header envelopes with ephemeral-static ECDH on P-256.

    Wrap: fresh ephemeral key pair per segment, ECDH with the KAS public key,
    HKDF-SHA256 to a wrapping key, AES-256-GCM over the segment key with the
    policy binding as AAD. Unwrap needs the KAS private key.
    """

    def __init__(
        self,
        kas_locator: str,
        kas_public_key: ec.EllipticCurvePublicKey,
        policy_evaluator: PolicyEvaluator,
        entitlement: EntitlementContext,
        kas_private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        signing_key: Optional[ec.EllipticCurvePrivateKey] = None,
        verifying_key: Optional[ec.EllipticCurvePublicKey] = None,
        remote_policy_base: Optional[str] = None,
    ) -> None:
        """
        Initialize CompactKeyProvider.

        Args:
            kas_locator: URL of the key-access authority written into headers
            kas_public_key: KAS P-256 public key used for key agreement
            policy_evaluator: Pass/fail policy predicate
            entitlement: Requester context passed to the evaluator
            kas_private_key: KAS private key (required for unwrap)
            signing_key: Signs every envelope when set
            verifying_key: Requires a valid envelope signature on unwrap when set
            remote_policy_base: Emit remote policy locators under this URL
                instead of embedding the policy
        """
        super().__init__()
        if not isinstance(kas_public_key.curve, ec.SECP256R1):
            raise InvalidInputError("KAS public key must be on secp256r1")
        self._kas_locator = validate_url(kas_locator)
        self._kas_public_key = kas_public_key
        self._kas_private_key = kas_private_key
        self._policy_evaluator = policy_evaluator
        self._entitlement = entitlement
        self._signing_key = signing_key
        self._verifying_key = verifying_key
        self._remote_policy_base = (
            validate_url(remote_policy_base) if remote_policy_base is not None else None
        )

    @property
    def kas_locator(self) -> str:
        return self._kas_locator

    def _bind_policy(
        self, asset_id: str, segment_index: int, policy: MediaDRMPolicy
    ) -> EnvelopePolicy:
        if self._remote_policy_base is None:
            return EnvelopePolicy.embedded(policy)
        return EnvelopePolicy.remote(
            remote_policy_locator(self._remote_policy_base, asset_id, segment_index, policy)
        )

    async def _generate(
        self, asset_id: str, segment_index: int, policy: MediaDRMPolicy
    ) -> GeneratedSegmentKey:
        envelope_policy = self._bind_policy(asset_id, segment_index, policy)
        key = SecureKey.generate()

        ephemeral = ec.generate_private_key(ec.SECP256R1())
        ephemeral_public = ephemeral.public_key().public_bytes(
            Encoding.X962, PublicFormat.CompressedPoint
        )
        shared_secret = ephemeral.exchange(ec.ECDH(), self._kas_public_key)

        aad = _wrap_aad(self._kas_locator, asset_id, segment_index, envelope_policy)
        with _derive_wrapping_key(shared_secret, ephemeral_public) as wrapping_key:
            wrapped = AesGcmCipher.encrypt(wrapping_key, key.as_bytes(), aad)

        envelope = CompactEnvelope(
            kas_locator=self._kas_locator,
            asset_id=asset_id,
            segment_index=segment_index,
            policy=envelope_policy,
            ephemeral_public_key=ephemeral_public,
            wrapped_key=wrapped.to_aead_blob(),
        )
        if self._signing_key is not None:
            signature = self._signing_key.sign(
                signed_portion(envelope), ec.ECDSA(hashes.SHA256())
            )
            envelope = envelope.with_signature(signature)

        return GeneratedSegmentKey(envelope=envelope, key=key)

    async def _unwrap(self, envelope: WrappedKeyEnvelope) -> SecureKey:
        if not isinstance(envelope, CompactEnvelope):
            raise InvalidInputError("CompactKeyProvider can only unwrap compact envelopes")
        if envelope.kas_locator != self._kas_locator:
            raise KeyUnwrapError(f"Envelope is bound to a different KAS: {envelope.kas_locator}")

        self._verify_signature(envelope)

        if not self._policy_evaluator.evaluate(envelope.policy, self._entitlement):
            raise PolicyDeniedError(
                f"Access denied for {envelope.asset_id} segment {envelope.segment_index}"
            )

        if self._kas_private_key is None:
            raise KeyUnwrapError("No KAS private key available for unwrap")

        try:
            ephemeral_public = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256R1(), envelope.ephemeral_public_key
            )
        except ValueError as e:
            raise KeyUnwrapError("Invalid ephemeral public key") from e

        shared_secret = self._kas_private_key.exchange(ec.ECDH(), ephemeral_public)
        aad = _wrap_aad(
            envelope.kas_locator, envelope.asset_id, envelope.segment_index, envelope.policy
        )

        try:
            wrapped = EncryptedSegment.from_aead_blob(envelope.wrapped_key)
            with _derive_wrapping_key(shared_secret, envelope.ephemeral_public_key) as wrapping_key:
                key_bytes = AesGcmCipher.decrypt(wrapping_key, wrapped, aad)
        except (AuthenticationError, InvalidInputError) as e:
            raise KeyUnwrapError("Wrapped key could not be opened") from e

        if len(key_bytes) != AES_256_KEY_SIZE:
            raise KeyUnwrapError(f"Unwrapped key has invalid size: {len(key_bytes)}")
        return SecureKey(key_bytes)

    def _verify_signature(self, envelope: CompactEnvelope) -> None:
        if self._verifying_key is None:
            return
        if not envelope.signature:
            raise KeyUnwrapError("Envelope signature required but absent")
        try:
            self._verifying_key.verify(
                envelope.signature, signed_portion(envelope), ec.ECDSA(hashes.SHA256())
            )
        except InvalidSignature:
            raise KeyUnwrapError("Envelope signature verification failed") from None

    def serialize_envelope(self, envelope: WrappedKeyEnvelope) -> str:
        if not isinstance(envelope, CompactEnvelope):
            raise InvalidInputError("CompactKeyProvider can only serialize compact envelopes")
        return envelope.to_base64()

    def parse_envelope(self, header: str) -> CompactEnvelope:
        return CompactEnvelope.from_base64(header)


# =============================================================================
# Key-Access Authority Boundary
# =============================================================================


class KeyAccessAuthority(ABC):
    """
    Remote key-access authority (KAS).

    Receives the wrapped key and policy, evaluates the requester's
    entitlement, and returns the recovered segment key.
    """

    @abstractmethod
    async def rewrap(self, request: KeyAccessRequest) -> bytes:
        """
        Returns:
            Raw 32-byte segment key

        Raises:
            PolicyDeniedError: If the requester is not entitled
            KeyUnwrapError: If the wrapped key cannot be recovered
        """
        ...


class LocalKeyAccessAuthority(KeyAccessAuthority):
    """
    In-process authority holding the KAS RSA private key.

    Serves offline playback and tests; a networked client implements the
    same interface.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, policy_evaluator: PolicyEvaluator) -> None:
        self._private_key = private_key
        self._policy_evaluator = policy_evaluator

    async def rewrap(self, request: KeyAccessRequest) -> bytes:
        if not self._policy_evaluator.evaluate(request.policy, request.entitlement):
            raise PolicyDeniedError(
                f"Access denied for {request.asset_id} segment {request.segment_index}"
            )

        try:
            key_bytes = self._private_key.decrypt(request.wrapped_key, _OAEP)
        except ValueError as e:
            raise KeyUnwrapError("RSA unwrap failed") from e

        with SecureKey(key_bytes) as key:
            if not verify_policy_binding(key, request.policy.body, request.policy_binding):
                raise KeyUnwrapError("Policy binding mismatch")
        return key_bytes


# =============================================================================
# Manifest Provider (RSA + KAS)
# =============================================================================


class ManifestKeyProvider(SegmentKeyProvider):
    """
    Manifest envelopes with RSA-OAEP key wrapping.

    Unwrap is delegated to a KeyAccessAuthority under a timeout. The returned
    key is checked against the manifest's policy binding before use.
    """

    def __init__(
        self,
        kas_url: str,
        kas_public_key: rsa.RSAPublicKey,
        authority: KeyAccessAuthority,
        entitlement: EntitlementContext,
        unwrap_timeout: float = 10.0,
        mime_type: str = DEFAULT_MIME_TYPE,
    ) -> None:
        """
        Initialize ManifestKeyProvider.

        Args:
            kas_url: KAS URL written into manifests
            kas_public_key: KAS RSA public key (2048+ bit) for key wrapping
            authority: Authority that performs policy checks and unwrap
            entitlement: Requester context forwarded to the authority
            unwrap_timeout: Seconds to wait for the authority
            mime_type: MIME type recorded in the manifest payload descriptor
        """
        super().__init__()
        if kas_public_key.key_size < MIN_RSA_KEY_SIZE:
            raise InvalidInputError(
                f"KAS RSA key must be at least {MIN_RSA_KEY_SIZE} bits, got {kas_public_key.key_size}"
            )
        if unwrap_timeout <= 0:
            raise InvalidInputError("unwrap_timeout must be positive")
        self._kas_url = validate_url(kas_url)
        self._kas_public_key = kas_public_key
        self._authority = authority
        self._entitlement = entitlement
        self._unwrap_timeout = unwrap_timeout
        self._mime_type = mime_type

    @property
    def kas_url(self) -> str:
        return self._kas_url

    async def _generate(
        self, asset_id: str, segment_index: int, policy: MediaDRMPolicy
    ) -> GeneratedSegmentKey:
        policy_bytes = policy.to_bytes()
        key = SecureKey.generate()
        wrapped_key = self._kas_public_key.encrypt(key.as_bytes(), _OAEP)

        envelope = ManifestEnvelope(
            kas_url=self._kas_url,
            asset_id=asset_id,
            segment_index=segment_index,
            policy=policy_bytes,
            wrapped_key=wrapped_key,
            policy_binding=policy_binding(key, policy_bytes),
            mime_type=self._mime_type,
        )
        return GeneratedSegmentKey(envelope=envelope, key=key)

    async def _unwrap(self, envelope: WrappedKeyEnvelope) -> SecureKey:
        if not isinstance(envelope, ManifestEnvelope):
            raise InvalidInputError("ManifestKeyProvider can only unwrap manifest envelopes")
        if envelope.kas_url != self._kas_url:
            raise KeyUnwrapError(f"Envelope is bound to a different KAS: {envelope.kas_url}")

        request = KeyAccessRequest(
            kas_url=envelope.kas_url,
            wrapped_key=envelope.wrapped_key,
            policy=envelope.envelope_policy,
            policy_binding=envelope.policy_binding,
            asset_id=envelope.asset_id,
            segment_index=envelope.segment_index,
            entitlement=self._entitlement,
        )

        try:
            key_bytes = await asyncio.wait_for(
                self._authority.rewrap(request), timeout=self._unwrap_timeout
            )
        except (PolicyDeniedError, KeyUnwrapError):
            raise
        except asyncio.TimeoutError as e:
            raise KeyUnwrapError(
                f"Key access authority timed out after {self._unwrap_timeout}s"
            ) from e
        except Exception as e:
            raise KeyUnwrapError(f"Key access authority request failed: {e}") from e

        if not isinstance(key_bytes, (bytes, bytearray)) or len(key_bytes) != AES_256_KEY_SIZE:
            raise KeyUnwrapError("Key access authority returned an invalid key")

        key = SecureKey(key_bytes)
        if not verify_policy_binding(key, envelope.policy, envelope.policy_binding):
            key.wipe()
            raise KeyUnwrapError("Policy binding mismatch")
        return key

    def serialize_envelope(self, envelope: WrappedKeyEnvelope) -> str:
        if not isinstance(envelope, ManifestEnvelope):
            raise InvalidInputError("ManifestKeyProvider can only serialize manifest envelopes")
        return envelope.to_base64()

    def parse_envelope(self, header: str) -> ManifestEnvelope:
        return ManifestEnvelope.from_base64(header)
