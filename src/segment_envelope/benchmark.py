"""
Segment Envelope Benchmark CLI.

Usage:
    segment-envelope-benchmark [--segments N] [--segment-size BYTES] [--env-file PATH]

Or run directly:
    python -m segment_envelope.benchmark

Setup:
    Set SEGMENT_ENVELOPE_KAS_URL and SEGMENT_ENVELOPE_CDN_BASE_URL in the
    environment or a .env file. KAS key pairs are generated in-process.
"""

from __future__ import annotations

import argparse
import asyncio
import secrets
import sys
import time
from typing import List, Optional

from cryptography.hazmat.primitives.asymmetric import ec, rsa

from segment_envelope.config import SegmentEnvelopeConfig, configure_logging
from segment_envelope.encryptor import SegmentEncryptor
from segment_envelope.errors import ConfigError
from segment_envelope.policy import (
    EntitlementContext,
    MediaDRMPolicy,
    RentalWindow,
    StaticPolicyEvaluator,
)
from segment_envelope.providers import (
    CompactKeyProvider,
    LocalKeyAccessAuthority,
    ManifestKeyProvider,
    SegmentKeyProvider,
)


def build_provider(config: SegmentEnvelopeConfig) -> SegmentKeyProvider:
    """Provider for the configured envelope format, backed by a local KAS."""
    evaluator = StaticPolicyEvaluator(allow=True)
    entitlement = EntitlementContext(subject="benchmark")

    if config.envelope_format == "manifest":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        return ManifestKeyProvider(
            kas_url=config.kas_url,
            kas_public_key=private_key.public_key(),
            authority=LocalKeyAccessAuthority(private_key, evaluator),
            entitlement=entitlement,
            unwrap_timeout=config.unwrap_timeout,
            mime_type=config.mime_type,
        )

    private_key = ec.generate_private_key(ec.SECP256R1())
    return CompactKeyProvider(
        kas_locator=config.kas_url,
        kas_public_key=private_key.public_key(),
        policy_evaluator=evaluator,
        entitlement=entitlement,
        kas_private_key=private_key,
    )


async def run_benchmark(segment_count: int, segment_size: int, config: SegmentEnvelopeConfig) -> None:
    """Run the segment envelope benchmark."""
    print("=== Segment Envelope Benchmark ===\n")
    print(f"Format: {config.envelope_format} | Segments: {segment_count} x {segment_size} bytes\n")

    policy = MediaDRMPolicy(
        rental_window=RentalWindow(purchase_window=7 * 86400, playback_window=48 * 3600),
        max_concurrent_streams=2,
    )
    encryptor = SegmentEncryptor.from_config(config, build_provider(config), policy)
    segments = [(secrets.token_bytes(segment_size), 6.0) for _ in range(segment_count)]

    # ========================================================================
    # Batch encryption
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Batch Encryption" + " " * 50 + "|")
    print("+" + "-" * 68 + "+")

    encrypt_start = time.perf_counter()
    outcomes = await encryptor.encrypt_segments(segments, asset_id="benchmark-asset")
    encrypt_duration = time.perf_counter() - encrypt_start

    failed = [outcome for outcome in outcomes if not outcome.ok]
    print(f"[OK] Encrypted {len(outcomes) - len(failed)}/{len(outcomes)} segments")
    print(f"[PERF] Time: {encrypt_duration * 1000:.3f}ms | Rate: {segment_count / encrypt_duration:.2f} segments/sec\n")
    for outcome in failed:
        print(f"[ERROR] Segment {outcome.index}: {outcome.error}")

    # ========================================================================
    # Sequential decryption
    # ========================================================================
    print("+" + "-" * 68 + "+")
    print("|  Decryption (policy evaluated per segment)" + " " * 25 + "|")
    print("+" + "-" * 68 + "+")

    timings: List[float] = []
    for outcome, (plaintext, _duration) in zip(outcomes, segments):
        if outcome.result is None:
            continue
        start = time.perf_counter()
        recovered = await encryptor.decrypt_segment(
            outcome.result.payload, outcome.result.metadata.envelope_header
        )
        timings.append(time.perf_counter() - start)
        if recovered != plaintext:
            print(f"[ERROR] Segment {outcome.index} round trip mismatch")

    if timings:
        average = sum(timings) / len(timings)
        print(f"[OK] Decrypted {len(timings)} segments")
        print(f"[PERF] Average: {average * 1000:.3f}ms ({1.0 / average:.2f} segments/sec)\n")

    stats = await encryptor.key_provider.stats()
    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")
    print("Key Provider Statistics:")
    print(f"  - Keys issued: {stats.keys_issued}")
    print(f"  - Unwraps granted: {stats.unwrap_granted}")
    print(f"  - Unwraps denied: {stats.unwrap_denied}")
    print(f"  - Unwraps failed: {stats.unwrap_failed}")
    print("\n" + "=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for segment-envelope-benchmark command."""
    parser = argparse.ArgumentParser(description="Benchmark per-segment envelope encryption")
    parser.add_argument("--segments", type=int, default=100, help="number of segments (default: 100)")
    parser.add_argument("--segment-size", type=int, default=1024 * 1024, help="bytes per segment (default: 1 MiB)")
    parser.add_argument("--env-file", default=None, help="optional .env file")
    args = parser.parse_args(argv)

    try:
        config = SegmentEnvelopeConfig.from_env(env_file=args.env_file)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    configure_logging(config.log_level)
    asyncio.run(run_benchmark(max(args.segments, 1), max(args.segment_size, 0), config))


if __name__ == "__main__":
    main()
