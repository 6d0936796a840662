"""
Segment encryptor: composes a key provider with AES-256-GCM.

Encrypt flow:
1. Provider mints a one-time key + envelope for (asset_id, segment_index, policy)
2. AES-256-GCM seals the segment with AAD = segment identity
3. Payload nonce is stamped into the envelope, envelope serialized into metadata
4. Key is wiped

Decrypt flow:
1. Envelope header parsed and payload split into ciphertext || tag (no key work)
2. Provider unwraps the key (policy evaluated on every call)
3. Payload opened with AAD = segment identity from the envelope
4. Key is wiped
"""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from .config import SegmentEnvelopeConfig
from .crypto import AesGcmCipher, EncryptedSegment
from .errors import EnvelopeError, FormatError, InvalidInputError
from .metadata import SegmentMetadata
from .policy import MediaDRMPolicy
from .providers import SegmentKeyProvider
from .validation import (
    validate_asset_id,
    validate_duration,
    validate_segment_index,
    validate_segment_size,
    validate_url,
)

logger = logging.getLogger(__name__)


def segment_aad(asset_id: str, segment_index: int) -> bytes:
    """Associated data binding a payload to its segment identity."""
    asset = asset_id.encode("utf-8")
    return b"segment-envelope/v1" + struct.pack(">H", len(asset)) + asset + struct.pack(">I", segment_index)


@dataclass(frozen=True)
class EncryptedSegmentResult:
    """Encrypted payload (ciphertext || tag) and its metadata."""

    payload: bytes
    metadata: SegmentMetadata


@dataclass(frozen=True)
class SegmentOutcome:
    """Per-segment result of a batch: either a result or the error it raised."""

    index: int
    result: Optional[EncryptedSegmentResult] = None
    error: Optional[EnvelopeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SegmentEncryptor:
    """
    Encrypts and decrypts media segments.

    Stateless across calls: keys live for one call only and nothing is
    cached between encrypt and decrypt.
    """

    def __init__(
        self,
        key_provider: SegmentKeyProvider,
        policy: MediaDRMPolicy,
        cdn_base_url: str,
        segment_extension: str = "ts",
        max_concurrency: int = 8,
    ) -> None:
        """
        Initialize SegmentEncryptor.

        Args:
            key_provider: Provider minting and recovering segment keys
            policy: Policy bound into every envelope
            cdn_base_url: Base URL for segment locators
            segment_extension: File extension of delivered segments
            max_concurrency: Upper bound on segments processed at once in a batch
        """
        if max_concurrency < 1:
            raise InvalidInputError("max_concurrency must be at least 1")
        self._key_provider = key_provider
        self._policy = policy
        self._cdn_base_url = validate_url(cdn_base_url, schemes=("http", "https"))
        self._segment_extension = segment_extension
        self._max_concurrency = max_concurrency

    @classmethod
    def from_config(
        cls,
        config: SegmentEnvelopeConfig,
        key_provider: SegmentKeyProvider,
        policy: MediaDRMPolicy,
    ) -> SegmentEncryptor:
        return cls(
            key_provider=key_provider,
            policy=policy,
            cdn_base_url=config.cdn_base_url,
            segment_extension=config.segment_extension,
            max_concurrency=config.max_concurrency,
        )

    @property
    def key_provider(self) -> SegmentKeyProvider:
        return self._key_provider

    def segment_url(self, asset_id: str, segment_index: int) -> str:
        return f"{self._cdn_base_url}/{asset_id}/segment_{segment_index}.{self._segment_extension}"

    async def encrypt_segment(
        self,
        plaintext: bytes,
        asset_id: str,
        segment_index: int,
        duration: float,
    ) -> EncryptedSegmentResult:
        """
        Encrypt one segment.

        Args:
            plaintext: Raw segment bytes (may be empty)
            asset_id: Asset identifier
            segment_index: Index of this segment within the asset
            duration: Segment duration in seconds

        Returns:
            EncryptedSegmentResult with ciphertext || tag and SegmentMetadata

        Raises:
            InvalidInputError: If an argument violates its precondition
        """
        validate_asset_id(asset_id)
        validate_segment_index(segment_index)
        duration = validate_duration(duration)
        validate_segment_size(plaintext)

        generated = await self._key_provider.generate_wrapped_key(
            asset_id, segment_index, self._policy
        )
        with generated.key as key:
            sealed = await asyncio.to_thread(
                AesGcmCipher.encrypt, key, bytes(plaintext), segment_aad(asset_id, segment_index)
            )

        envelope = generated.envelope.with_payload_nonce(sealed.nonce)
        metadata = SegmentMetadata(
            index=segment_index,
            duration=duration,
            url=self.segment_url(asset_id, segment_index),
            envelope_header=self._key_provider.serialize_envelope(envelope),
            iv=sealed.nonce,
            asset_id=asset_id,
            created_at=datetime.now(timezone.utc),
        )
        logger.debug("Encrypted segment %s[%d] (%d bytes)", asset_id, segment_index, len(plaintext))
        return EncryptedSegmentResult(payload=sealed.to_payload(), metadata=metadata)

    async def decrypt_segment(self, payload: bytes, envelope_header: str) -> bytes:
        """
        Decrypt one segment.

        Args:
            payload: Encrypted payload, ciphertext || tag
            envelope_header: Envelope text from SegmentMetadata.envelope_header

        Returns:
            Plaintext segment bytes

        Raises:
            FormatError: If the header is malformed or carries no payload nonce
            PolicyDeniedError: If the policy denies access
            KeyUnwrapError: If the key cannot be recovered
            InvalidInputError: If the payload is shorter than a tag
            AuthenticationError: If the payload fails authentication
        """
        envelope = self._key_provider.parse_envelope(envelope_header)
        if not envelope.payload_nonce:
            raise FormatError("Missing required field: payload nonce")
        segment = EncryptedSegment.from_payload(payload, envelope.payload_nonce)

        key = await self._key_provider.unwrap_key(envelope)
        with key:
            plaintext = await asyncio.to_thread(
                AesGcmCipher.decrypt,
                key,
                segment,
                segment_aad(envelope.asset_id, envelope.segment_index),
            )
        logger.debug("Decrypted segment %s[%d]", envelope.asset_id, envelope.segment_index)
        return plaintext

    async def encrypt_segments(
        self,
        segments: Sequence[Tuple[bytes, float]],
        asset_id: str,
        start_index: int = 0,
    ) -> List[SegmentOutcome]:
        """
        Encrypt a batch of segments concurrently.

        Indices are assigned start_index, start_index + 1, ... in input order
        and outcomes are returned in that same order. A failing segment is
        reported in its own outcome; the others are unaffected.

        Args:
            segments: Sequence of (data, duration)
            asset_id: Asset identifier
            start_index: Index of the first segment

        Returns:
            One SegmentOutcome per input segment, in input order
        """
        validate_asset_id(asset_id)
        validate_segment_index(start_index)
        if segments:
            validate_segment_index(start_index + len(segments) - 1)

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run(offset: int, data: bytes, duration: float) -> SegmentOutcome:
            index = start_index + offset
            async with semaphore:
                try:
                    result = await self.encrypt_segment(data, asset_id, index, duration)
                except EnvelopeError as e:
                    logger.warning("Segment %s[%d] failed: %s", asset_id, index, e)
                    return SegmentOutcome(index=index, error=e)
            return SegmentOutcome(index=index, result=result)

        tasks = [
            asyncio.ensure_future(run(offset, data, duration))
            for offset, (data, duration) in enumerate(segments)
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # Unexpected failure or cancellation: stop the remaining segments
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(
            "Encrypted %d/%d segments for %s (%d failed)",
            len(outcomes) - failed,
            len(outcomes),
            asset_id,
            failed,
        )
        return list(outcomes)
