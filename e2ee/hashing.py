"""
Hashing and statistical self-test helpers.

Content hashing backs the envelope integrity tag and the identity
fingerprint. The diagnostics (diffusion, confusion, collision sampling) are
sanity checks of the primitives, not security proofs.
"""

import random
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.hazmat.primitives import hashes

from .primitives import (
    aead_encrypt,
    generate_key,
    random_bytes,
    text_to_bytes,
)


def sha256_digest(data: Union[bytes, str]) -> bytes:
    """SHA-256 of bytes, or of the UTF-8 encoding of a string"""
    if isinstance(data, str):
        data = text_to_bytes(data)
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def sha256_hex(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 and return it as a lowercase hex string.

    Args:
        data: Bytes, or text which is hashed as UTF-8

    Returns:
        64-character hex digest
    """
    return sha256_digest(data).hex()


def hamming_distance_bits(a: bytes, b: bytes) -> int:
    """
    Count the bits that differ between two equal-length buffers.

    Raises:
        ValueError: If the buffers differ in length
    """
    if len(a) != len(b):
        raise ValueError("Buffers must be same length for Hamming distance")
    return sum(bin(x ^ y).count("1") for x, y in zip(a, b))


def bit_difference_percent(a: bytes, b: bytes) -> float:
    """Percentage of bits that differ between two equal-length buffers"""
    if not a:
        return 0.0
    return hamming_distance_bits(a, b) / (len(a) * 8) * 100


def flip_bit(data: bytes, byte_index: Optional[int] = None, bit_index: Optional[int] = None,
             rng: Optional[random.Random] = None) -> bytes:
    """
    Return a copy of data with exactly one bit flipped.

    Positions not given are chosen at random.
    """
    if not data:
        raise ValueError("Cannot flip a bit in an empty buffer")
    rng = rng or random.Random()
    if byte_index is None:
        byte_index = rng.randrange(len(data))
    if bit_index is None:
        bit_index = rng.randrange(8)

    copy = bytearray(data)
    copy[byte_index] ^= 1 << bit_index
    return bytes(copy)


def measure_diffusion(plaintext: bytes, key: Optional[bytes] = None, nonce: bytes = bytes(12),
                      byte_index: Optional[int] = None, bit_index: Optional[int] = None) -> float:
    """
    Flip one plaintext bit, re-encrypt under the same key and nonce, and
    report the percentage of output bits (ciphertext + tag) that changed.

    AES-GCM is a stream mode: exactly one body bit flips and the 128-bit tag
    changes to an unrelated value. Expect about 1 + 64 changed bits, e.g.
    roughly 19% for a 26-byte plaintext, never near 50%.

    Deliberately reuses the nonce; never do this outside a self-test.
    """
    key = key or generate_key()
    flipped = flip_bit(plaintext, byte_index, bit_index)
    original = aead_encrypt(key, nonce, plaintext)
    changed = aead_encrypt(key, nonce, flipped)
    return bit_difference_percent(original, changed)


def measure_confusion(plaintext: bytes, nonce: bytes = bytes(12)) -> float:
    """
    Encrypt the same plaintext under two fresh keys with the same nonce and
    report the percentage of output bits that differ.
    """
    first = aead_encrypt(generate_key(), nonce, plaintext)
    second = aead_encrypt(generate_key(), nonce, plaintext)
    return bit_difference_percent(first, second)


@dataclass
class CollisionReport:
    """Outcome of a hash collision sample"""
    tested: int
    collisions: int
    unique_hashes: int


def sample_hash_collisions(count: int = 2048, input_size: int = 64) -> CollisionReport:
    """
    Hash `count` independent random inputs and count repeated digests.

    Args:
        count: Number of inputs to hash
        input_size: Size of each random input in bytes

    Returns:
        CollisionReport
    """
    seen = set()
    collisions = 0

    for _ in range(count):
        digest = sha256_hex(random_bytes(input_size))
        if digest in seen:
            collisions += 1
        else:
            seen.add(digest)

    return CollisionReport(tested=count, collisions=collisions, unique_hashes=len(seen))
