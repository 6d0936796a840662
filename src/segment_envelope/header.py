"""
Compact binary envelope header.

Header layout (binary, all integers big-endian):
- 3 bytes: magic b'SGE'
- 1 byte: version (1)
- 2 bytes + N: KAS locator (UTF-8)
- 2 bytes + N: asset id (UTF-8)
- 4 bytes: segment index
- 1 byte: policy kind (0 = embedded, 1 = remote)
- 2 bytes + N: policy body
- 1 byte: curve id (0 = secp256r1)
- 33 bytes: ephemeral public key (SEC1 compressed point)
- 2 bytes + N: wrapped key (nonce || ciphertext || tag)
- 2 bytes + N: signature over all preceding fields (N = 0 when unsigned)
- 1 byte + N: payload nonce (N = 0 until the payload is sealed, else 12)

Decoding only parses. It never evaluates policy or touches key material, so
headers can be inspected for routing and logging without a decrypt attempt.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass, replace

from .crypto import NONCE_SIZE
from .errors import FormatError, InvalidInputError
from .policy import EnvelopePolicy, PolicyKind

MAGIC: bytes = b"SGE"
VERSION: int = 1
CURVE_SECP256R1: int = 0x00
EPHEMERAL_KEY_SIZE: int = 33

_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class CompactEnvelope:
    """Wrapped segment key plus everything needed to recover it."""

    kas_locator: str
    asset_id: str
    segment_index: int
    policy: EnvelopePolicy
    ephemeral_public_key: bytes
    wrapped_key: bytes
    signature: bytes = b""
    payload_nonce: bytes = b""
    curve: int = CURVE_SECP256R1

    def validate(self) -> None:
        """
        Check the envelope can be encoded.

        Raises:
            InvalidInputError: If any field is missing or exceeds its wire size
        """
        _check_prefixed("KAS locator", self.kas_locator.encode("utf-8"), _U16_MAX)
        _check_prefixed("asset id", self.asset_id.encode("utf-8"), _U16_MAX)
        _check_prefixed("policy", self.policy.body, _U16_MAX)
        _check_prefixed("wrapped key", self.wrapped_key, _U16_MAX)
        if not 0 <= self.segment_index <= _U32_MAX:
            raise InvalidInputError(f"Segment index out of range: {self.segment_index}")
        if self.curve != CURVE_SECP256R1:
            raise InvalidInputError(f"Unsupported curve id: {self.curve}")
        if len(self.ephemeral_public_key) != EPHEMERAL_KEY_SIZE:
            raise InvalidInputError(
                f"Ephemeral public key must be {EPHEMERAL_KEY_SIZE} bytes, got {len(self.ephemeral_public_key)}"
            )
        if len(self.signature) > _U16_MAX:
            raise InvalidInputError("Signature too long")
        if len(self.payload_nonce) not in (0, NONCE_SIZE):
            raise InvalidInputError(
                f"Payload nonce must be empty or {NONCE_SIZE} bytes, got {len(self.payload_nonce)}"
            )

    def with_payload_nonce(self, nonce: bytes) -> CompactEnvelope:
        return replace(self, payload_nonce=bytes(nonce))

    def with_signature(self, signature: bytes) -> CompactEnvelope:
        return replace(self, signature=bytes(signature))

    def to_bytes(self) -> bytes:
        return encode_compact(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> CompactEnvelope:
        return decode_compact(data)

    def to_base64(self) -> str:
        """Encode as base64 string."""
        return base64.standard_b64encode(encode_compact(self)).decode("ascii")

    @classmethod
    def from_base64(cls, encoded: str) -> CompactEnvelope:
        """
        Decode from base64 string.

        Raises:
            FormatError: If decoding fails or the header is invalid
        """
        try:
            decoded = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FormatError(f"Base64 decode error: {e}") from e
        return decode_compact(decoded)


def _check_prefixed(name: str, value: bytes, limit: int) -> None:
    if not value:
        raise InvalidInputError(f"Envelope {name} cannot be empty")
    if len(value) > limit:
        raise InvalidInputError(f"Envelope {name} too long: {len(value)} bytes (maximum {limit})")


def signed_portion(envelope: CompactEnvelope) -> bytes:
    """Encoded fields covered by the envelope signature (magic .. wrapped key)."""
    envelope.validate()
    locator = envelope.kas_locator.encode("utf-8")
    asset_id = envelope.asset_id.encode("utf-8")

    header = bytearray()
    header += MAGIC
    header += struct.pack("B", VERSION)
    header += struct.pack(">H", len(locator))
    header += locator
    header += struct.pack(">H", len(asset_id))
    header += asset_id
    header += struct.pack(">I", envelope.segment_index)
    header += struct.pack("B", int(envelope.policy.kind))
    header += struct.pack(">H", len(envelope.policy.body))
    header += envelope.policy.body
    header += struct.pack("B", envelope.curve)
    header += envelope.ephemeral_public_key
    header += struct.pack(">H", len(envelope.wrapped_key))
    header += envelope.wrapped_key
    return bytes(header)


def encode_compact(envelope: CompactEnvelope) -> bytes:
    """
    Serialize an envelope into the compact wire layout.

    Raises:
        InvalidInputError: If the envelope is not structurally valid
    """
    header = bytearray(signed_portion(envelope))
    header += struct.pack(">H", len(envelope.signature))
    header += envelope.signature
    header += struct.pack("B", len(envelope.payload_nonce))
    header += envelope.payload_nonce
    return bytes(header)


class _Reader:
    """Bounds-checked cursor: every length is checked before it is consumed."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def take(self, length: int, field: str) -> bytes:
        if length > self.remaining:
            raise FormatError(
                f"Truncated header: {field} needs {length} bytes, {self.remaining} remaining"
            )
        chunk = self._data[self._offset : self._offset + length]
        self._offset += length
        return chunk

    def u8(self, field: str) -> int:
        return self.take(1, field)[0]

    def u16(self, field: str) -> int:
        (value,) = struct.unpack(">H", self.take(2, field))
        return value

    def u32(self, field: str) -> int:
        (value,) = struct.unpack(">I", self.take(4, field))
        return value

    def prefixed(self, field: str, width: int = 2, required: bool = True) -> bytes:
        length = self.u8(f"{field} length") if width == 1 else self.u16(f"{field} length")
        value = self.take(length, field)
        if required and not value:
            raise FormatError(f"Missing required field: {field}")
        return value

    def text(self, field: str) -> str:
        raw = self.prefixed(field)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"Invalid UTF-8 in {field}") from e


def decode_compact(data: bytes) -> CompactEnvelope:
    """
    Parse a compact envelope header.

    Raises:
        FormatError: On magic/version mismatch, unknown policy kind or curve,
            truncation, missing required fields or trailing bytes
    """
    reader = _Reader(data)

    if reader.take(len(MAGIC), "magic") != MAGIC:
        raise FormatError("Invalid header format (magic mismatch)")
    version = reader.u8("version")
    if version != VERSION:
        raise FormatError(f"Unsupported header version: {version}")

    kas_locator = reader.text("KAS locator")
    asset_id = reader.text("asset id")
    segment_index = reader.u32("segment index")

    kind = reader.u8("policy kind")
    try:
        policy_kind = PolicyKind(kind)
    except ValueError:
        raise FormatError(f"Unknown policy kind: {kind}") from None
    policy_body = reader.prefixed("policy")
    if policy_kind is PolicyKind.REMOTE:
        try:
            policy_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError("Invalid UTF-8 in remote policy locator") from e
    policy = EnvelopePolicy(kind=policy_kind, body=policy_body)

    curve = reader.u8("curve")
    if curve != CURVE_SECP256R1:
        raise FormatError(f"Unsupported curve id: {curve}")
    ephemeral_public_key = reader.take(EPHEMERAL_KEY_SIZE, "ephemeral public key")

    wrapped_key = reader.prefixed("wrapped key")
    signature = reader.prefixed("signature", required=False)
    payload_nonce = reader.prefixed("payload nonce", width=1, required=False)
    if len(payload_nonce) not in (0, NONCE_SIZE):
        raise FormatError(f"Invalid payload nonce length: {len(payload_nonce)}")

    if reader.remaining:
        raise FormatError(f"Unexpected {reader.remaining} trailing bytes after header")

    return CompactEnvelope(
        kas_locator=kas_locator,
        asset_id=asset_id,
        segment_index=segment_index,
        policy=policy,
        ephemeral_public_key=ephemeral_public_key,
        wrapped_key=wrapped_key,
        signature=signature,
        payload_nonce=payload_nonce,
        curve=curve,
    )
