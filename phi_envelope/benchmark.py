"""
Encrypted-field benchmark CLI.

Usage:
    phi-envelope-benchmark [--count N] [--in-memory]

Or run directly:
    python -m phi_envelope.benchmark

AWS KMS setup:
    Set AWS_KMS_KEY_ID, AWS_REGION and FINDING_INDEX_KEY_BASE64 in the
    environment or a .env file. --in-memory needs no configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

from phi_envelope.blind_index import BlindIndex
from phi_envelope.crypto import AES_256_KEY_SIZE, generate_random_bytes
from phi_envelope.envelope import EnvelopeService
from phi_envelope.errors import EnvelopeError
from phi_envelope.kms import InMemoryKeyGateway
from phi_envelope.schemas import build_codec
from phi_envelope.settings import Settings


@dataclass
class BenchmarkResult:
    count: int
    seal_seconds: float
    open_seconds: float
    index_seconds: float
    duplicate_tags: int

    def rate(self, seconds: float) -> float:
        return self.count / seconds if seconds > 0 else float("inf")


def _in_memory_settings() -> Settings:
    return Settings(
        master_key_id="local/phi-master",
        index_key_b64=base64.b64encode(generate_random_bytes(AES_256_KEY_SIZE)).decode("ascii"),
    )


async def run_benchmark(
    count: int, settings: Settings, in_memory: bool = False
) -> BenchmarkResult:
    """Seal, index and reopen ``count`` findings through the ground_truth codec."""
    gateway = InMemoryKeyGateway([settings.master_key_id]) if in_memory else None
    envelope = EnvelopeService.from_settings(settings, gateway=gateway)
    blind_index = settings.blind_index()
    codec = build_codec("ground_truth", envelope, blind_index)

    findings = [f"Finding-{i}" for i in range(count)]

    seal_start = time.perf_counter()
    rows = await asyncio.gather(
        *(codec.to_storage({"study_id": 1, "finding": f}) for f in findings)
    )
    seal_seconds = time.perf_counter() - seal_start

    open_start = time.perf_counter()
    decoded = await codec.from_storage_many(rows)
    open_seconds = time.perf_counter() - open_start

    index_start = time.perf_counter()
    tags: List[str] = [codec.index_for("finding", f) for f in findings]
    index_seconds = time.perf_counter() - index_start

    if [d["finding"] for d in decoded] != findings:
        raise EnvelopeError("Round trip mismatch")

    return BenchmarkResult(
        count=count,
        seal_seconds=seal_seconds,
        open_seconds=open_seconds,
        index_seconds=index_seconds,
        duplicate_tags=len(tags) - len(set(tags)),
    )


def _print_result(result: BenchmarkResult, backend: str) -> None:
    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")
    print(f"Backend: {backend} | Values: {result.count}\n")
    print(f"[PERF] Seal:  {result.seal_seconds * 1000:.3f}ms ({result.rate(result.seal_seconds):.2f} ops/sec)")
    print(f"[PERF] Open:  {result.open_seconds * 1000:.3f}ms ({result.rate(result.open_seconds):.2f} ops/sec)")
    print(f"[PERF] Index: {result.index_seconds * 1000:.3f}ms ({result.rate(result.index_seconds):.2f} ops/sec)")
    print(f"[DEBUG] Duplicate index tags: {result.duplicate_tags}\n")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for phi-envelope-benchmark command."""
    parser = argparse.ArgumentParser(prog="phi-envelope-benchmark")
    parser.add_argument("--count", type=int, default=100, help="values to seal (default: 100)")
    parser.add_argument("--in-memory", action="store_true", help="use the local key gateway")
    args = parser.parse_args(argv)

    try:
        settings = _in_memory_settings() if args.in_memory else Settings.from_env()
        result = asyncio.run(run_benchmark(args.count, settings, in_memory=args.in_memory))
    except EnvelopeError as e:
        print(f"ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    _print_result(result, "in-memory" if args.in_memory else "aws-kms")
    return 0


if __name__ == "__main__":
    sys.exit(main())
