"""
Tests for policy records and evaluators.
"""

from __future__ import annotations

import pytest

from segment_envelope import (
    CallablePolicyEvaluator,
    EntitlementContext,
    EnvelopePolicy,
    MediaDRMPolicy,
    PolicyKind,
    SerializationError,
    StaticPolicyEvaluator,
    remote_policy_locator,
)


def test_bytes_round_trip(drm_policy: MediaDRMPolicy) -> None:
    assert MediaDRMPolicy.from_bytes(drm_policy.to_bytes()) == drm_policy


def test_serialization_is_canonical() -> None:
    a = MediaDRMPolicy(allowed_regions=frozenset({"US", "CA", "GB"}))
    b = MediaDRMPolicy(allowed_regions=frozenset({"GB", "US", "CA"}))
    assert a.to_bytes() == b.to_bytes()
    assert b" " not in a.to_bytes()


def test_from_bytes_rejects_garbage() -> None:
    with pytest.raises(SerializationError):
        MediaDRMPolicy.from_bytes(b"\xff\xfe")
    with pytest.raises(SerializationError):
        MediaDRMPolicy.from_bytes(b"[]")
    with pytest.raises(SerializationError):
        MediaDRMPolicy.from_bytes(b'{"hdcpLevel": "type9"}')


def test_attributes(drm_policy: MediaDRMPolicy) -> None:
    attrs = drm_policy.attributes("asset-1", 4)
    assert attrs[:2] == ["asset:asset-1", "segment:4"]
    assert "rental:purchase_window:86400" in attrs
    assert "concurrency:max:2" in attrs
    assert "geo:allowed:CA,US" in attrs
    assert "hdcp:type1" in attrs


def test_embedded_policy(drm_policy: MediaDRMPolicy) -> None:
    policy = EnvelopePolicy.embedded(drm_policy)
    assert policy.kind is PolicyKind.EMBEDDED
    assert policy.locator is None
    assert policy.media_policy() == drm_policy


def test_remote_policy_locator() -> None:
    locator = remote_policy_locator(
        "https://policy.example.com/", "asset-1", 2, MediaDRMPolicy()
    )
    assert locator == "https://policy.example.com/asset-1?attrs=asset:asset-1;segment:2"

    policy = EnvelopePolicy.remote(locator)
    assert policy.kind is PolicyKind.REMOTE
    assert policy.locator == locator
    assert policy.media_policy() is None


def test_static_evaluator(drm_policy: MediaDRMPolicy) -> None:
    context = EntitlementContext(subject="viewer-1")
    policy = EnvelopePolicy.embedded(drm_policy)
    assert StaticPolicyEvaluator(allow=True).evaluate(policy, context)
    assert not StaticPolicyEvaluator(allow=False).evaluate(policy, context)


def test_callable_evaluator(drm_policy: MediaDRMPolicy) -> None:
    evaluator = CallablePolicyEvaluator(
        lambda policy, context: context.region in policy.media_policy().allowed_regions
    )
    policy = EnvelopePolicy.embedded(drm_policy)
    assert evaluator.evaluate(policy, EntitlementContext(subject="a", region="US"))
    assert not evaluator.evaluate(policy, EntitlementContext(subject="a", region="FR"))
