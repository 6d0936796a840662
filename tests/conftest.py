"""
Pytest configuration and fixtures for segment envelope tests.
"""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from segment_envelope import (
    CompactKeyProvider,
    EntitlementContext,
    HDCPLevel,
    LocalKeyAccessAuthority,
    ManifestKeyProvider,
    MediaDRMPolicy,
    RentalWindow,
    SegmentEncryptor,
    StaticPolicyEvaluator,
)

KAS_URL = "https://kas.example.com"
CDN_URL = "https://cdn.example.com"


@pytest.fixture(scope="session")
def kas_ec_key() -> ec.EllipticCurvePrivateKey:
    """KAS P-256 key pair for compact envelopes."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def kas_rsa_key() -> rsa.RSAPrivateKey:
    """KAS RSA key pair for manifest envelopes."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    """Publisher key for signed compact headers."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def entitlement() -> EntitlementContext:
    return EntitlementContext(subject="viewer-1", region="US", session_id="session-1")


@pytest.fixture
def drm_policy() -> MediaDRMPolicy:
    return MediaDRMPolicy(
        rental_window=RentalWindow(purchase_window=86400, playback_window=3600),
        max_concurrent_streams=2,
        allowed_regions=frozenset({"US", "CA"}),
        hdcp_level=HDCPLevel.TYPE1,
    )


@pytest.fixture
def compact_provider(
    kas_ec_key: ec.EllipticCurvePrivateKey, entitlement: EntitlementContext
) -> CompactKeyProvider:
    """Compact provider that holds the KAS private key and allows everything."""
    return CompactKeyProvider(
        kas_locator=KAS_URL,
        kas_public_key=kas_ec_key.public_key(),
        policy_evaluator=StaticPolicyEvaluator(allow=True),
        entitlement=entitlement,
        kas_private_key=kas_ec_key,
    )


@pytest.fixture
def manifest_provider(
    kas_rsa_key: rsa.RSAPrivateKey, entitlement: EntitlementContext
) -> ManifestKeyProvider:
    """Manifest provider backed by an in-process authority."""
    return ManifestKeyProvider(
        kas_url=KAS_URL,
        kas_public_key=kas_rsa_key.public_key(),
        authority=LocalKeyAccessAuthority(kas_rsa_key, StaticPolicyEvaluator(allow=True)),
        entitlement=entitlement,
    )


@pytest.fixture
def encryptor(compact_provider: CompactKeyProvider, drm_policy: MediaDRMPolicy) -> SegmentEncryptor:
    return SegmentEncryptor(compact_provider, drm_policy, CDN_URL)


@pytest.fixture
def manifest_encryptor(
    manifest_provider: ManifestKeyProvider, drm_policy: MediaDRMPolicy
) -> SegmentEncryptor:
    return SegmentEncryptor(manifest_provider, drm_policy, CDN_URL)
