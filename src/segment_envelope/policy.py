"""
Policy records and the policy-evaluation boundary.

This module provides:
- MediaDRMPolicy: Media entitlement rules bound into every wrapped segment key
- EnvelopePolicy: The policy as carried in an envelope (embedded or remote)
- EntitlementContext: Requester context handed to the policy evaluator
- PolicyEvaluator: Pass/fail predicate supplied by the embedding application

The rules themselves are opaque here: envelopes carry and compare them, a
PolicyEvaluator decides.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional
from urllib.parse import quote

from .errors import SerializationError


class HDCPLevel(Enum):
    """HDCP requirement level."""

    NONE = "none"
    TYPE0 = "type0"  # HDCP 1.x
    TYPE1 = "type1"  # HDCP 2.2+


class DeviceSecurityLevel(Enum):
    """Minimum device security level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RentalWindow:
    """Rental window in seconds."""

    purchase_window: float  # purchase -> first play
    playback_window: float  # first play -> expiry


@dataclass(frozen=True)
class MediaDRMPolicy:
    """
    Media entitlement rules for protected content.

    Serialized canonically (sorted keys, no whitespace) so identical rules
    always produce identical policy bytes and therefore identical bindings.
    """

    rental_window: Optional[RentalWindow] = None
    max_concurrent_streams: Optional[int] = None
    allowed_regions: Optional[FrozenSet[str]] = None  # ISO 3166-1 alpha-2
    blocked_regions: Optional[FrozenSet[str]] = None
    hdcp_level: Optional[HDCPLevel] = None
    min_security_level: Optional[DeviceSecurityLevel] = None
    allow_virtual_machines: bool = False
    required_subscription_tier: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"allowVirtualMachines": self.allow_virtual_machines}
        if self.rental_window is not None:
            data["rentalWindow"] = {
                "purchaseWindow": self.rental_window.purchase_window,
                "playbackWindow": self.rental_window.playback_window,
            }
        if self.max_concurrent_streams is not None:
            data["maxConcurrentStreams"] = self.max_concurrent_streams
        if self.allowed_regions is not None:
            data["allowedRegions"] = sorted(self.allowed_regions)
        if self.blocked_regions is not None:
            data["blockedRegions"] = sorted(self.blocked_regions)
        if self.hdcp_level is not None:
            data["hdcpLevel"] = self.hdcp_level.value
        if self.min_security_level is not None:
            data["minSecurityLevel"] = self.min_security_level.value
        if self.required_subscription_tier is not None:
            data["requiredSubscriptionTier"] = self.required_subscription_tier
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> MediaDRMPolicy:
        try:
            rental = data.get("rentalWindow")
            allowed = data.get("allowedRegions")
            blocked = data.get("blockedRegions")
            hdcp = data.get("hdcpLevel")
            security = data.get("minSecurityLevel")
            return cls(
                rental_window=RentalWindow(
                    purchase_window=float(rental["purchaseWindow"]),
                    playback_window=float(rental["playbackWindow"]),
                )
                if rental is not None
                else None,
                max_concurrent_streams=data.get("maxConcurrentStreams"),
                allowed_regions=frozenset(allowed) if allowed is not None else None,
                blocked_regions=frozenset(blocked) if blocked is not None else None,
                hdcp_level=HDCPLevel(hdcp) if hdcp is not None else None,
                min_security_level=DeviceSecurityLevel(security) if security is not None else None,
                allow_virtual_machines=bool(data.get("allowVirtualMachines", False)),
                required_subscription_tier=data.get("requiredSubscriptionTier"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Failed to deserialize policy: {e}") from e

    def to_bytes(self) -> bytes:
        """Canonical JSON encoding."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> MediaDRMPolicy:
        try:
            decoded = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SerializationError(f"Failed to deserialize policy: {e}") from e
        if not isinstance(decoded, dict):
            raise SerializationError("Policy document must be a JSON object")
        return cls.from_dict(decoded)

    def attributes(self, asset_id: str, segment_index: int) -> List[str]:
        """Attribute list identifying this policy for one segment."""
        attrs = [f"asset:{asset_id}", f"segment:{segment_index}"]
        if self.rental_window is not None:
            attrs.append(f"rental:purchase_window:{int(self.rental_window.purchase_window)}")
            attrs.append(f"rental:playback_window:{int(self.rental_window.playback_window)}")
        if self.max_concurrent_streams is not None:
            attrs.append(f"concurrency:max:{self.max_concurrent_streams}")
        if self.allowed_regions:
            attrs.append(f"geo:allowed:{','.join(sorted(self.allowed_regions))}")
        if self.blocked_regions:
            attrs.append(f"geo:blocked:{','.join(sorted(self.blocked_regions))}")
        if self.hdcp_level is not None:
            attrs.append(f"hdcp:{self.hdcp_level.value}")
        return attrs


class PolicyKind(IntEnum):
    """How an envelope carries its policy (wire value)."""

    EMBEDDED = 0x00
    REMOTE = 0x01


@dataclass(frozen=True)
class EnvelopePolicy:
    """Policy as bound into an envelope: canonical rules or a locator."""

    kind: PolicyKind
    body: bytes

    @classmethod
    def embedded(cls, policy: MediaDRMPolicy) -> EnvelopePolicy:
        return cls(kind=PolicyKind.EMBEDDED, body=policy.to_bytes())

    @classmethod
    def remote(cls, locator: str) -> EnvelopePolicy:
        return cls(kind=PolicyKind.REMOTE, body=locator.encode("utf-8"))

    @property
    def locator(self) -> Optional[str]:
        """Remote policy locator, None for embedded policies."""
        if self.kind is PolicyKind.REMOTE:
            return self.body.decode("utf-8")
        return None

    def media_policy(self) -> Optional[MediaDRMPolicy]:
        """Embedded rules, None for remote policies."""
        if self.kind is PolicyKind.EMBEDDED:
            return MediaDRMPolicy.from_bytes(self.body)
        return None


def remote_policy_locator(
    base_url: str,
    asset_id: str,
    segment_index: int,
    policy: MediaDRMPolicy,
) -> str:
    """Build the policy-service locator for a remote policy."""
    attrs = ";".join(policy.attributes(asset_id, segment_index))
    return f"{base_url.rstrip('/')}/{asset_id}?attrs={quote(attrs, safe=':,;')}"


@dataclass(frozen=True)
class EntitlementContext:
    """Who is asking for a segment key, as seen by the policy evaluator."""

    subject: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    region: Optional[str] = None
    session_id: Optional[str] = None


class PolicyEvaluator(ABC):
    """
    Policy-evaluation boundary.

    Implementations decide whether a requester may recover a key bound to
    the given policy. Must be a pure predicate: no side effects that other
    unwrap calls could observe.
    """

    @abstractmethod
    def evaluate(self, policy: EnvelopePolicy, context: EntitlementContext) -> bool:
        """Return True to allow key recovery, False to deny."""
        ...


class StaticPolicyEvaluator(PolicyEvaluator):
    """Fixed decision for every request."""

    def __init__(self, allow: bool) -> None:
        self._allow = allow

    def evaluate(self, policy: EnvelopePolicy, context: EntitlementContext) -> bool:
        return self._allow


class CallablePolicyEvaluator(PolicyEvaluator):
    """Adapts a plain function to the PolicyEvaluator interface."""

    def __init__(self, func: Callable[[EnvelopePolicy, EntitlementContext], bool]) -> None:
        self._func = func

    def evaluate(self, policy: EnvelopePolicy, context: EntitlementContext) -> bool:
        return bool(self._func(policy, context))
