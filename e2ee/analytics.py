"""
Cryptographic self-test report.

Times AES-GCM on text-sized and file-sized inputs, runs the diffusion,
confusion and collision diagnostics, and summarizes stored envelopes. The
numbers describe this machine and these primitives; they prove nothing.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .envelope import Envelope, verify_integrity
from .hashing import CollisionReport, measure_confusion, measure_diffusion, sample_hash_collisions
from .primitives import (
    EnvelopeFormatError,
    aead_decrypt,
    aead_encrypt,
    generate_key,
    generate_nonce,
    random_bytes,
    text_to_bytes,
)

BENCHMARK_TEXT = "Hello, this is a test message for encryption benchmarking!"
DIAGNOSTIC_TEXT = "Test message for diffusion"
FILE_BENCHMARK_SIZE = 512 * 1024


@dataclass
class TimingStats:
    """Per-iteration timings in milliseconds"""
    samples: List[float] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def mean(self) -> float:
        return sum(self.samples) / len(self.samples) if self.samples else 0.0

    @property
    def minimum(self) -> float:
        return min(self.samples) if self.samples else 0.0

    @property
    def maximum(self) -> float:
        return max(self.samples) if self.samples else 0.0


@dataclass
class AeadBenchmark:
    size: int
    encrypt: TimingStats
    decrypt: TimingStats


@dataclass
class SelfTestReport:
    text: AeadBenchmark
    file: AeadBenchmark
    diffusion: float
    confusion: float
    collisions: CollisionReport


@dataclass
class EnvelopeDetails:
    """What can be learned about a stored row without opening it"""
    id: Optional[int]
    sender_id: Optional[str]
    wrap_algorithm: Optional[str]
    ciphertext_size: int
    integrity_hash: Optional[str]
    integrity_ok: bool
    hash_unique: bool
    has_file: bool
    file_size: Optional[int] = None


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def benchmark_aead(plaintext: bytes, iterations: int) -> AeadBenchmark:
    """
    Encrypt and decrypt plaintext `iterations` times, each under a fresh
    key and nonce.
    """
    if iterations < 1:
        raise ValueError("iterations must be positive")

    encrypt = TimingStats()
    decrypt = TimingStats()
    for _ in range(iterations):
        key = generate_key()
        nonce = generate_nonce()

        start = time.perf_counter()
        ciphertext = aead_encrypt(key, nonce, plaintext)
        encrypt.samples.append(_elapsed_ms(start))

        start = time.perf_counter()
        aead_decrypt(key, nonce, ciphertext)
        decrypt.samples.append(_elapsed_ms(start))

    return AeadBenchmark(size=len(plaintext), encrypt=encrypt, decrypt=decrypt)


def run_self_test(text_iterations: int = 100, file_iterations: int = 20,
                  file_size: int = FILE_BENCHMARK_SIZE, collision_samples: int = 2048) -> SelfTestReport:
    """
    Run the timing benchmarks and the three diagnostics.

    Diffusion is measured over ciphertext and tag together. AES-GCM changes
    one body bit and re-randomizes the tag, so expect about 19%.
    """
    sample = text_to_bytes(DIAGNOSTIC_TEXT)
    return SelfTestReport(
        text=benchmark_aead(text_to_bytes(BENCHMARK_TEXT), text_iterations),
        file=benchmark_aead(random_bytes(file_size), file_iterations),
        diffusion=measure_diffusion(sample),
        confusion=measure_confusion(sample),
        collisions=sample_hash_collisions(collision_samples),
    )


def describe_rows(rows: Iterable[Dict]) -> List[EnvelopeDetails]:
    """
    Summarize stored message rows without any keys.

    Rows that do not parse are still listed, with integrity_ok False.
    """
    rows = list(rows)
    hash_counts = Counter(row.get("hash_hex") for row in rows)
    details = []

    for row in rows:
        file_meta = row.get("file_meta") or {}
        try:
            envelope = Envelope.from_row(row)
        except EnvelopeFormatError:
            envelope = None

        details.append(EnvelopeDetails(
            id=row.get("id"),
            sender_id=row.get("sender_id"),
            wrap_algorithm=row.get("wrap_alg"),
            ciphertext_size=len(envelope.ciphertext) if envelope else 0,
            integrity_hash=row.get("hash_hex"),
            integrity_ok=envelope is not None and verify_integrity(envelope),
            hash_unique=hash_counts[row.get("hash_hex")] == 1,
            has_file=bool(row.get("file_meta")),
            file_size=file_meta.get("size") if isinstance(file_meta, dict) else None,
        ))
    return details
