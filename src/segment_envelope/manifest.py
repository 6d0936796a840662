"""
Manifest envelope: the document form of a wrapped segment key.

The manifest carries the same logical fields as the compact header (wrapped
key, policy, KAS locator, payload nonce) as named JSON fields, laid out like
a TDF manifest. The ciphertext payload travels separately.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping

from .crypto import NONCE_SIZE
from .errors import FormatError, InvalidInputError
from .policy import EnvelopePolicy, PolicyKind
from .validation import validate_asset_id, validate_segment_index

SCHEMA_VERSION: str = "1.0.0"
ALGORITHM: str = "AES-256-GCM"
BINDING_ALG: str = "HS256"
DEFAULT_MIME_TYPE: str = "video/mp2t"


@dataclass(frozen=True)
class ManifestEnvelope:
    """Wrapped segment key in manifest form."""

    kas_url: str
    asset_id: str
    segment_index: int
    policy: bytes  # canonical policy document
    wrapped_key: bytes
    policy_binding: bytes  # HMAC-SHA256(segment key, policy)
    payload_nonce: bytes = b""
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def envelope_policy(self) -> EnvelopePolicy:
        return EnvelopePolicy(kind=PolicyKind.EMBEDDED, body=self.policy)

    def validate(self) -> None:
        """
        Raises:
            InvalidInputError: If a required field is empty, the segment identity is
                out of range or the nonce has the wrong size
        """
        for name in ("kas_url", "asset_id", "policy", "wrapped_key", "policy_binding"):
            if not getattr(self, name):
                raise InvalidInputError(f"Manifest {name} cannot be empty")
        validate_asset_id(self.asset_id)
        validate_segment_index(self.segment_index)
        if len(self.payload_nonce) not in (0, NONCE_SIZE):
            raise InvalidInputError(
                f"Payload nonce must be empty or {NONCE_SIZE} bytes, got {len(self.payload_nonce)}"
            )

    def with_payload_nonce(self, nonce: bytes) -> ManifestEnvelope:
        return replace(self, payload_nonce=bytes(nonce))

    def to_document(self) -> Dict[str, Any]:
        self.validate()
        metadata = json.dumps(
            {"asset_id": self.asset_id, "segment_index": self.segment_index},
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
        return {
            "schemaVersion": SCHEMA_VERSION,
            "payload": {
                "type": "reference",
                "url": "0.payload",
                "protocol": "zip",
                "isEncrypted": True,
                "mimeType": self.mime_type,
            },
            "encryptionInformation": {
                "type": "split",
                "keyAccess": [
                    {
                        "type": "wrapped",
                        "url": self.kas_url,
                        "protocol": "kas",
                        "wrappedKey": _b64(self.wrapped_key),
                        "policyBinding": {"alg": BINDING_ALG, "hash": _b64(self.policy_binding)},
                        "encryptedMetadata": _b64(metadata),
                    }
                ],
                "method": {
                    "algorithm": ALGORITHM,
                    "iv": _b64(self.payload_nonce),
                    "isStreamable": True,
                },
                "policy": _b64(self.policy),
            },
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> ManifestEnvelope:
        """
        Parse a manifest document.

        Raises:
            FormatError: If a required field is missing, mistyped or undecodable
        """
        if not isinstance(document, Mapping):
            raise FormatError("Manifest must be a JSON object")
        enc_info = _field(document, "encryptionInformation", dict)
        key_access_list = _field(enc_info, "keyAccess", list)
        if not key_access_list or not isinstance(key_access_list[0], dict):
            raise FormatError("Missing required field: keyAccess[0]")
        key_access = key_access_list[0]
        method = _field(enc_info, "method", dict)
        binding = _field(key_access, "policyBinding", dict)

        algorithm = _field(method, "algorithm", str)
        if algorithm != ALGORITHM:
            raise FormatError(f"Unsupported encryption method: {algorithm}")

        metadata_raw = _unb64(_field(key_access, "encryptedMetadata", str), "encryptedMetadata")
        try:
            metadata = json.loads(metadata_raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FormatError(f"Invalid encryptedMetadata: {e}") from e
        if not isinstance(metadata, dict):
            raise FormatError("encryptedMetadata must be a JSON object")
        asset_id = _field(metadata, "asset_id", str)
        segment_index = _field(metadata, "segment_index", int)

        nonce = _unb64(_field(method, "iv", str), "iv")
        if len(nonce) not in (0, NONCE_SIZE):
            raise FormatError(f"Invalid payload nonce length: {len(nonce)}")

        payload = document.get("payload")
        mime_type = DEFAULT_MIME_TYPE
        if isinstance(payload, dict) and isinstance(payload.get("mimeType"), str):
            mime_type = payload["mimeType"]

        envelope = cls(
            kas_url=_field(key_access, "url", str),
            asset_id=asset_id,
            segment_index=segment_index,
            policy=_unb64(_field(enc_info, "policy", str), "policy"),
            wrapped_key=_unb64(_field(key_access, "wrappedKey", str), "wrappedKey"),
            policy_binding=_unb64(_field(binding, "hash", str), "policyBinding.hash"),
            payload_nonce=nonce,
            mime_type=mime_type,
        )
        try:
            envelope.validate()
        except InvalidInputError as e:
            raise FormatError(str(e)) from e
        return envelope

    def to_json(self) -> bytes:
        return json.dumps(self.to_document(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> ManifestEnvelope:
        try:
            document = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FormatError(f"Invalid manifest JSON: {e}") from e
        return cls.from_document(document)

    def to_base64(self) -> str:
        return _b64(self.to_json())

    @classmethod
    def from_base64(cls, encoded: str) -> ManifestEnvelope:
        return cls.from_json(_unb64(encoded, "manifest"))


def _b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _unb64(encoded: str, name: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatError(f"Invalid base64 in {name}: {e}") from e


def _field(mapping: Mapping[str, Any], key: str, expected: type) -> Any:
    if key not in mapping:
        raise FormatError(f"Missing required field: {key}")
    value = mapping[key]
    # bool is an int subclass
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise FormatError(f"Field {key} must be {expected.__name__}")
    return value
