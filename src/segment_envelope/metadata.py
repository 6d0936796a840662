"""
Segment metadata: the descriptor shipped alongside each encrypted segment.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from .errors import InvalidInputError, SerializationError


@dataclass(frozen=True)
class SegmentMetadata:
    """
    Metadata for one encrypted segment.

    Created once per successful encrypt call and never modified. The
    envelope header is the provider's text form of the wrapped-key envelope;
    iv mirrors the payload nonce carried inside that envelope.
    """

    index: int
    duration: float
    url: str
    envelope_header: str
    iv: bytes
    asset_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if isinstance(self.index, bool) or not isinstance(self.index, int) or self.index < 0:
            raise InvalidInputError(f"Segment index must be a non-negative integer, got {self.index!r}")
        if not self.duration > 0:
            raise InvalidInputError(f"Segment duration must be positive, got {self.duration!r}")

    @property
    def id(self) -> int:
        return self.index

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "duration": self.duration,
            "url": self.url,
            "envelopeHeader": self.envelope_header,
            "iv": base64.standard_b64encode(self.iv).decode("ascii"),
            "assetID": self.asset_id,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SegmentMetadata:
        """
        Build from the fixed field names.

        Raises:
            SerializationError: If a field is missing or malformed
        """
        try:
            created_at = datetime.fromisoformat(data["createdAt"])
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            return cls(
                index=data["index"],
                duration=float(data["duration"]),
                url=str(data["url"]),
                envelope_header=str(data["envelopeHeader"]),
                iv=base64.b64decode(data["iv"], validate=True),
                asset_id=str(data["assetID"]),
                created_at=created_at,
            )
        except (KeyError, TypeError, ValueError, binascii.Error, InvalidInputError) as e:
            raise SerializationError(f"Failed to deserialize segment metadata: {e}") from e

    def to_json(self) -> str:
        """Serialize metadata to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> SegmentMetadata:
        """Deserialize metadata from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Failed to deserialize segment metadata: {e}") from e
        if not isinstance(data, dict):
            raise SerializationError("Segment metadata must be a JSON object")
        return cls.from_dict(data)
