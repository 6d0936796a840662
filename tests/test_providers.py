"""
Tests for segment key providers.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from segment_envelope import (
    CallablePolicyEvaluator,
    CompactEnvelope,
    CompactKeyProvider,
    EntitlementContext,
    InvalidInputError,
    KeyAccessAuthority,
    KeyAccessRequest,
    KeyUnwrapError,
    LocalKeyAccessAuthority,
    ManifestEnvelope,
    ManifestKeyProvider,
    MediaDRMPolicy,
    PolicyDeniedError,
    PolicyKind,
    StaticPolicyEvaluator,
)
from segment_envelope.header import signed_portion

KAS_URL = "https://kas.example.com"


def _compact(kas_key, entitlement, **overrides) -> CompactKeyProvider:
    kwargs = dict(
        kas_locator=KAS_URL,
        kas_public_key=kas_key.public_key(),
        policy_evaluator=StaticPolicyEvaluator(allow=True),
        entitlement=entitlement,
        kas_private_key=kas_key,
    )
    kwargs.update(overrides)
    return CompactKeyProvider(**kwargs)


class SlowAuthority(KeyAccessAuthority):
    async def rewrap(self, request: KeyAccessRequest) -> bytes:
        await asyncio.sleep(5)
        return b"\x00" * 32


class BrokenAuthority(KeyAccessAuthority):
    async def rewrap(self, request: KeyAccessRequest) -> bytes:
        raise ConnectionError("KAS unreachable")


class TestCompactKeyProvider:
    async def test_generate_and_unwrap(
        self, compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await compact_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        envelope = generated.envelope

        assert isinstance(envelope, CompactEnvelope)
        assert envelope.kas_locator == KAS_URL
        assert envelope.policy.kind is PolicyKind.EMBEDDED
        assert envelope.policy.media_policy() == drm_policy
        assert len(envelope.wrapped_key) == 60

        key = await compact_provider.unwrap_key(envelope)
        assert key.as_bytes() == generated.key.as_bytes()

    async def test_keys_are_unique_per_segment(
        self, compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        first = await compact_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        second = await compact_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        assert first.key.as_bytes() != second.key.as_bytes()
        assert first.envelope.ephemeral_public_key != second.envelope.ephemeral_public_key

    async def test_serialized_envelope_round_trip(
        self, compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await compact_provider.generate_wrapped_key("asset-1", 5, drm_policy)
        header = compact_provider.serialize_envelope(generated.envelope)
        parsed = compact_provider.parse_envelope(header)
        assert parsed == generated.envelope
        key = await compact_provider.unwrap_key(parsed)
        assert key.as_bytes() == generated.key.as_bytes()

    async def test_policy_denied(
        self, kas_ec_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = _compact(kas_ec_key, entitlement, policy_evaluator=StaticPolicyEvaluator(allow=False))
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)

        with pytest.raises(PolicyDeniedError):
            await provider.unwrap_key(generated.envelope)

        stats = await provider.stats()
        assert stats.keys_issued == 1
        assert stats.unwrap_denied == 1
        assert stats.unwrap_granted == 0

    async def test_policy_evaluated_on_every_unwrap(
        self, kas_ec_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        calls = []

        def evaluate(policy, context) -> bool:
            calls.append(policy)
            return True

        provider = _compact(kas_ec_key, entitlement, policy_evaluator=CallablePolicyEvaluator(evaluate))
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        await provider.unwrap_key(generated.envelope)
        await provider.unwrap_key(generated.envelope)
        assert len(calls) == 2

    async def test_wrong_kas_private_key(
        self, kas_ec_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = _compact(
            kas_ec_key, entitlement, kas_private_key=ec.generate_private_key(ec.SECP256R1())
        )
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)

        with pytest.raises(KeyUnwrapError):
            await provider.unwrap_key(generated.envelope)
        assert (await provider.stats()).unwrap_failed == 1

    async def test_tampered_identity_fails_unwrap(
        self, compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await compact_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        moved = replace(generated.envelope, segment_index=1)
        with pytest.raises(KeyUnwrapError):
            await compact_provider.unwrap_key(moved)

    async def test_tampered_policy_fails_unwrap(
        self, compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await compact_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        relaxed = replace(
            generated.envelope,
            policy=replace(generated.envelope.policy, body=MediaDRMPolicy().to_bytes()),
        )
        with pytest.raises(KeyUnwrapError):
            await compact_provider.unwrap_key(relaxed)

    async def test_unwrap_without_private_key(
        self, kas_ec_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = _compact(kas_ec_key, entitlement, kas_private_key=None)
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(KeyUnwrapError):
            await provider.unwrap_key(generated.envelope)

    async def test_different_kas_locator(
        self, kas_ec_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        issuer = _compact(kas_ec_key, entitlement, kas_locator="https://other-kas.example.com")
        generated = await issuer.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(KeyUnwrapError):
            await _compact(kas_ec_key, entitlement).unwrap_key(generated.envelope)

    async def test_signed_envelope(
        self, kas_ec_key, signing_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = _compact(
            kas_ec_key,
            entitlement,
            signing_key=signing_key,
            verifying_key=signing_key.public_key(),
        )
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        assert generated.envelope.signature

        key = await provider.unwrap_key(generated.envelope)
        assert key.as_bytes() == generated.key.as_bytes()

        impostor = ec.generate_private_key(ec.SECP256R1())
        forged = generated.envelope.with_signature(
            impostor.sign(signed_portion(generated.envelope), ec.ECDSA(hashes.SHA256()))
        )
        with pytest.raises(KeyUnwrapError):
            await provider.unwrap_key(forged)

    async def test_missing_signature_rejected(
        self, kas_ec_key, signing_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = _compact(kas_ec_key, entitlement, verifying_key=signing_key.public_key())
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(KeyUnwrapError, match="signature"):
            await provider.unwrap_key(generated.envelope)

    async def test_remote_policy(
        self, kas_ec_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = _compact(kas_ec_key, entitlement, remote_policy_base="https://policy.example.com")
        generated = await provider.generate_wrapped_key("asset-1", 9, drm_policy)

        assert generated.envelope.policy.kind is PolicyKind.REMOTE
        assert "segment:9" in generated.envelope.policy.locator
        key = await provider.unwrap_key(generated.envelope)
        assert key.as_bytes() == generated.key.as_bytes()

    async def test_rejects_manifest_envelope(
        self,
        compact_provider: CompactKeyProvider,
        manifest_provider: ManifestKeyProvider,
        drm_policy: MediaDRMPolicy,
    ) -> None:
        generated = await manifest_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(InvalidInputError):
            await compact_provider.unwrap_key(generated.envelope)

    async def test_invalid_asset_id(
        self, compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        with pytest.raises(InvalidInputError):
            await compact_provider.generate_wrapped_key("asset/../1", 0, drm_policy)

    def test_rejects_other_curve(self, entitlement: EntitlementContext) -> None:
        other = ec.generate_private_key(ec.SECP384R1())
        with pytest.raises(InvalidInputError):
            _compact(other, entitlement)


class TestManifestKeyProvider:
    async def test_generate_and_unwrap(
        self, manifest_provider: ManifestKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await manifest_provider.generate_wrapped_key("asset-1", 2, drm_policy)
        envelope = generated.envelope

        assert isinstance(envelope, ManifestEnvelope)
        assert envelope.kas_url == KAS_URL
        assert envelope.policy == drm_policy.to_bytes()
        assert len(envelope.wrapped_key) == 256

        key = await manifest_provider.unwrap_key(envelope)
        assert key.as_bytes() == generated.key.as_bytes()

    async def test_serialized_envelope_round_trip(
        self, manifest_provider: ManifestKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await manifest_provider.generate_wrapped_key("asset-1", 2, drm_policy)
        header = manifest_provider.serialize_envelope(generated.envelope)
        assert manifest_provider.parse_envelope(header) == generated.envelope

    async def test_authority_denies(
        self, kas_rsa_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = ManifestKeyProvider(
            kas_url=KAS_URL,
            kas_public_key=kas_rsa_key.public_key(),
            authority=LocalKeyAccessAuthority(kas_rsa_key, StaticPolicyEvaluator(allow=False)),
            entitlement=entitlement,
        )
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(PolicyDeniedError):
            await provider.unwrap_key(generated.envelope)
        assert (await provider.stats()).unwrap_denied == 1

    async def test_tampered_policy_fails_binding(
        self, manifest_provider: ManifestKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await manifest_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        relaxed = replace(generated.envelope, policy=MediaDRMPolicy().to_bytes())
        with pytest.raises(KeyUnwrapError, match="binding"):
            await manifest_provider.unwrap_key(relaxed)

    async def test_different_kas_url(
        self, manifest_provider: ManifestKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await manifest_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        moved = replace(generated.envelope, kas_url="https://other-kas.example.com")
        with pytest.raises(KeyUnwrapError, match="different KAS"):
            await manifest_provider.unwrap_key(moved)
        assert (await manifest_provider.stats()).unwrap_failed == 1

    async def test_corrupt_wrapped_key(
        self, manifest_provider: ManifestKeyProvider, drm_policy: MediaDRMPolicy
    ) -> None:
        generated = await manifest_provider.generate_wrapped_key("asset-1", 0, drm_policy)
        corrupt = replace(generated.envelope, wrapped_key=b"\x00" * 256)
        with pytest.raises(KeyUnwrapError):
            await manifest_provider.unwrap_key(corrupt)

    async def test_authority_timeout(
        self, kas_rsa_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = ManifestKeyProvider(
            kas_url=KAS_URL,
            kas_public_key=kas_rsa_key.public_key(),
            authority=SlowAuthority(),
            entitlement=entitlement,
            unwrap_timeout=0.05,
        )
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(KeyUnwrapError, match="timed out"):
            await provider.unwrap_key(generated.envelope)
        assert (await provider.stats()).unwrap_failed == 1

    async def test_authority_unreachable(
        self, kas_rsa_key, entitlement: EntitlementContext, drm_policy: MediaDRMPolicy
    ) -> None:
        provider = ManifestKeyProvider(
            kas_url=KAS_URL,
            kas_public_key=kas_rsa_key.public_key(),
            authority=BrokenAuthority(),
            entitlement=entitlement,
        )
        generated = await provider.generate_wrapped_key("asset-1", 0, drm_policy)
        with pytest.raises(KeyUnwrapError, match="unreachable"):
            await provider.unwrap_key(generated.envelope)

    def test_rejects_small_rsa_key(self, entitlement: EntitlementContext) -> None:
        small = rsa.generate_private_key(public_exponent=65537, key_size=1024)
        with pytest.raises(InvalidInputError):
            ManifestKeyProvider(
                kas_url=KAS_URL,
                kas_public_key=small.public_key(),
                authority=LocalKeyAccessAuthority(small, StaticPolicyEvaluator(allow=True)),
                entitlement=entitlement,
            )
