#!/usr/bin/env python3
"""
Tests for cryptographic primitives, hashing, key encoding and key wrapping.
"""

import random

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from e2ee.hashing import (
    bit_difference_percent,
    flip_bit,
    hamming_distance_bits,
    measure_confusion,
    measure_diffusion,
    sample_hash_collisions,
    sha256_hex,
)
from e2ee.keys import (
    IdentityKeys,
    PublicIdentity,
    canonical_jwk,
    export_private,
    export_public,
    fingerprint,
    format_fingerprint,
    generate_agreement_keypair,
    import_agreement_private,
    import_agreement_public,
    import_encapsulation_private,
    import_encapsulation_public,
)
from e2ee.primitives import (
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    DecryptionError,
    EncodingError,
    EnvelopeFormatError,
    KeyFormatError,
    UnwrapError,
    WrapError,
    aead_decrypt,
    aead_encrypt,
    b64decode,
    b64encode,
    b64url_decode,
    b64url_encode,
    bytes_to_int,
    bytes_to_text,
    constant_time_compare,
    from_hex,
    generate_key,
    generate_nonce,
    generate_salt,
    int_to_bytes,
    text_to_bytes,
    to_hex,
)
from e2ee.wrap import (
    WrapAlgorithm,
    attempt_agreement_wrap,
    derive_kek,
    unwrap_message_key,
    unwrap_with_agreement,
    unwrap_with_encapsulation,
    wrap_message_key,
    wrap_with_agreement,
    wrap_with_encapsulation,
)

SAMPLE = b"attack at dawn, bring cake"


def test_random_material_sizes():
    """Test generated keys, nonces and salts"""
    assert len(generate_key()) == 32, "Wrong key length"
    assert len(generate_nonce()) == NONCE_SIZE, "Wrong nonce length"
    assert len(generate_salt()) == SALT_SIZE, "Wrong salt length"
    assert generate_key() != generate_key(), "Keys should be fresh"


def test_encryption():
    """Test symmetric encryption"""
    key = generate_key()
    nonce = generate_nonce()

    ciphertext = aead_encrypt(key, nonce, SAMPLE)
    assert len(ciphertext) == len(SAMPLE) + TAG_SIZE, "Tag not appended"
    assert aead_decrypt(key, nonce, ciphertext) == SAMPLE, "Decryption failed"

    with pytest.raises(DecryptionError):
        aead_decrypt(generate_key(), nonce, ciphertext)
    with pytest.raises(DecryptionError):
        aead_decrypt(key, nonce, ciphertext[:TAG_SIZE - 1])


def test_encryption_rejects_bad_nonce():
    with pytest.raises(ValueError):
        aead_encrypt(generate_key(), b"short", SAMPLE)


def test_wrong_key_size_is_rejected():
    nonce = generate_nonce()
    ciphertext = aead_encrypt(generate_key(), nonce, SAMPLE)

    with pytest.raises(ValueError):
        aead_encrypt(b"sixteen byte key", nonce, SAMPLE)
    # A 16-byte key is valid AES but not what this layer uses
    for key in (b"short!!", b"sixteen byte key", bytes(33)):
        with pytest.raises(DecryptionError):
            aead_decrypt(key, nonce, ciphertext)


def test_base64_codecs():
    data = bytes(range(256))
    assert b64decode(b64encode(data)) == data
    assert b64url_decode(b64url_encode(data)) == data
    assert "=" not in b64url_encode(b"\x00"), "base64url must be unpadded"

    with pytest.raises(EncodingError):
        b64decode("not base64!")
    with pytest.raises(EncodingError):
        b64url_decode("***")


def test_text_hex_and_integer_codecs():
    assert bytes_to_text(text_to_bytes("héllo")) == "héllo"
    assert from_hex(to_hex(b"\x00\xff")) == b"\x00\xff"
    assert int_to_bytes(65537) == b"\x01\x00\x01"
    assert int_to_bytes(1, 4) == b"\x00\x00\x00\x01"
    assert bytes_to_int(b"\x01\x00\x01") == 65537

    with pytest.raises(EncodingError):
        bytes_to_text(b"\xff\xfe")
    with pytest.raises(EncodingError):
        from_hex("zz")


def test_constant_time_compare():
    assert constant_time_compare(b"abc", b"abc")
    assert not constant_time_compare(b"abc", b"abd")
    assert not constant_time_compare(b"abc", b"abcd")


def test_sha256_known_vector():
    assert sha256_hex(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert sha256_hex("abc") == sha256_hex(b"abc")


def test_hamming_distance():
    assert hamming_distance_bits(b"\x00", b"\xff") == 8
    assert bit_difference_percent(b"\x00\x00", b"\x0f\x00") == 25.0
    with pytest.raises(ValueError):
        hamming_distance_bits(b"\x00", b"\x00\x00")


def test_flip_bit_changes_exactly_one_bit():
    flipped = flip_bit(SAMPLE, rng=random.Random(7))
    assert hamming_distance_bits(SAMPLE, flipped) == 1


def test_single_bit_flip_in_plaintext():
    """
    One plaintext bit flip changes exactly one body bit and re-randomizes the tag.

    AES-GCM is counter mode, so the body does not diffuse; tampering is
    caught by the tag instead.
    """
    key = generate_key()
    nonce = bytes(NONCE_SIZE)
    original = aead_encrypt(key, nonce, SAMPLE)
    changed = aead_encrypt(key, nonce, flip_bit(SAMPLE, byte_index=3, bit_index=2))

    body = len(SAMPLE)
    assert hamming_distance_bits(original[:body], changed[:body]) == 1, "Body should differ by one bit"
    assert original[body:] != changed[body:], "Tag should change"
    assert hamming_distance_bits(original[body:], changed[body:]) > 16, "Tag should look re-randomized"


def test_confusion_between_keys():
    """Same plaintext and nonce under two keys differs in at least 30% of bits"""
    assert measure_confusion(SAMPLE) >= 30.0


def test_no_hash_collisions_in_sample():
    report = sample_hash_collisions(2048)
    assert report.tested == 2048
    assert report.collisions == 0
    assert report.unique_hashes == 2048


def test_agreement_jwk_round_trip():
    keypair = generate_agreement_keypair()
    public_jwk = export_public(keypair.public_key)
    private_jwk = export_private(keypair.private_key)

    assert public_jwk["kty"] == "EC" and public_jwk["crv"] == "P-256"
    assert "d" not in public_jwk
    assert export_public(import_agreement_public(public_jwk)) == public_jwk
    assert export_private(import_agreement_private(private_jwk)) == private_jwk


def test_encapsulation_jwk_round_trip(alice_keys):
    public_jwk = export_public(alice_keys.encapsulation.public_key)
    private_jwk = export_private(alice_keys.encapsulation_private)

    assert public_jwk["alg"] == "RSA-OAEP-256"
    assert b64url_decode(public_jwk["e"]) == b"\x01\x00\x01"
    assert export_public(import_encapsulation_public(public_jwk)) == public_jwk
    assert export_private(import_encapsulation_private(private_jwk)) == private_jwk


def test_encapsulation_private_without_crt_members(alice_keys):
    private_jwk = export_private(alice_keys.encapsulation_private)
    minimal = {name: private_jwk[name] for name in ("kty", "alg", "n", "e", "d")}
    restored = import_encapsulation_private(minimal)

    assert export_public(restored) == export_public(alice_keys.encapsulation.public_key)
    assert restored.private_numbers().d == alice_keys.encapsulation_private.private_numbers().d
    wrapped = wrap_with_encapsulation(b"k" * 32, alice_keys.encapsulation.public_key)
    assert unwrap_with_encapsulation(wrapped, restored) == b"k" * 32


@pytest.mark.parametrize("mutate", [
    lambda jwk: jwk.update(kty="RSA"),
    lambda jwk: jwk.update(crv="P-384"),
    lambda jwk: jwk.pop("x"),
    lambda jwk: jwk.update(y=b64url_encode(b"\x01" * 32)),
    lambda jwk: jwk.update(x="%%%"),
])
def test_agreement_import_rejects_malformed(mutate):
    jwk = export_public(generate_agreement_keypair().public_key)
    mutate(jwk)
    with pytest.raises(KeyFormatError):
        import_agreement_public(jwk)


def test_agreement_private_import_requires_d():
    with pytest.raises(KeyFormatError):
        import_agreement_private(export_public(generate_agreement_keypair().public_key))


def test_encapsulation_import_rejects_malformed(alice_keys, eve_keys):
    jwk = export_public(alice_keys.encapsulation.public_key)
    with pytest.raises(KeyFormatError):
        import_encapsulation_public(dict(jwk, alg="RSA1_5"))
    with pytest.raises(KeyFormatError):
        import_encapsulation_public(dict(jwk, kty="EC"))
    with pytest.raises(KeyFormatError):
        import_encapsulation_public({"kty": "RSA", "e": jwk["e"]})
    with pytest.raises(KeyFormatError):
        import_encapsulation_private(jwk)
    with pytest.raises(KeyFormatError):
        import_encapsulation_public({"kty": "RSA", "n": b64url_encode(b"\xff" * 64), "e": jwk["e"]})


def test_fingerprint_is_deterministic_and_ordered(alice_keys, bob_keys):
    agreement = alice_keys.agreement.public_key
    encapsulation = alice_keys.encapsulation.public_key

    value = fingerprint(agreement, encapsulation)
    assert len(value) == 64
    assert value == fingerprint(export_public(agreement), export_public(encapsulation))
    assert value == alice_keys.fingerprint()
    assert value != bob_keys.fingerprint()

    # Same bytes concatenated the other way round must not match
    swapped = sha256_hex(canonical_jwk(export_public(encapsulation)) + canonical_jwk(export_public(agreement)))
    assert value != swapped


def test_fingerprint_ignores_extra_jwk_members(alice_keys):
    agreement_jwk = dict(export_public(alice_keys.agreement.public_key), ext=True, key_ops=[])
    encapsulation_jwk = dict(export_public(alice_keys.encapsulation.public_key), ext=True)
    assert fingerprint(agreement_jwk, encapsulation_jwk) == alice_keys.fingerprint()


def test_format_fingerprint():
    assert format_fingerprint("abcdef0123") == "ABCD EF01 23"


def test_public_identity_round_trip(alice_keys):
    record = alice_keys.public_identity("alice", display_name="Alice")
    restored = PublicIdentity.from_dict(record.to_dict())

    assert restored == record
    assert restored.verify_fingerprint()
    assert isinstance(restored.agreement_public_key(), ec.EllipticCurvePublicKey)


def test_public_identity_detects_wrong_fingerprint(alice_keys, bob_keys):
    record = alice_keys.public_identity("alice")
    record.fingerprint = bob_keys.fingerprint()
    assert not record.verify_fingerprint()

    with pytest.raises(KeyFormatError):
        PublicIdentity.from_dict({"user_id": "alice"})


def test_identity_from_private_jwks(alice_keys):
    jwks = alice_keys.private_jwks()
    restored = IdentityKeys.from_private_jwks(jwks["agreement"], jwks["encapsulation"])
    assert restored.fingerprint() == alice_keys.fingerprint()


def test_kek_agreement_is_symmetric(alice_keys, bob_keys):
    salt = generate_salt()
    alice_side = derive_kek(alice_keys.agreement_private, bob_keys.agreement.public_key, salt)
    bob_side = derive_kek(bob_keys.agreement_private, alice_keys.agreement.public_key, salt)
    assert alice_side == bob_side
    assert len(alice_side) == 32
    assert derive_kek(alice_keys.agreement_private, bob_keys.agreement.public_key, generate_salt()) != alice_side


def test_agreement_wrap_round_trip(alice_keys, bob_keys):
    message_key = generate_key()
    salt = generate_salt()
    wrapped = wrap_with_agreement(message_key, alice_keys.agreement_private, bob_keys.agreement.public_key, salt)

    assert len(wrapped) == 32 + TAG_SIZE
    assert unwrap_with_agreement(wrapped, bob_keys.agreement_private, alice_keys.agreement.public_key, salt) == message_key

    with pytest.raises(UnwrapError):
        unwrap_with_agreement(wrapped, bob_keys.agreement_private, alice_keys.agreement.public_key, generate_salt())
    with pytest.raises(UnwrapError):
        unwrap_with_agreement(flip_bit(wrapped, 0, 0), bob_keys.agreement_private,
                              alice_keys.agreement.public_key, salt)


def test_encapsulation_wrap_round_trip(bob_keys, eve_keys):
    message_key = generate_key()
    wrapped = wrap_with_encapsulation(message_key, bob_keys.encapsulation.public_key)

    assert len(wrapped) == 512, "RSA-4096 output is 512 bytes"
    assert unwrap_with_encapsulation(wrapped, bob_keys.encapsulation_private) == message_key

    with pytest.raises(UnwrapError):
        unwrap_with_encapsulation(wrapped, eve_keys.encapsulation_private)
    with pytest.raises(WrapError):
        wrap_with_encapsulation(message_key, None)


def test_wrap_prefers_agreement(alice_keys, bob_keys):
    message_key = generate_key()
    salt = generate_salt()
    algorithm, wrapped = wrap_message_key(
        message_key, alice_keys.agreement_private, bob_keys.agreement.public_key,
        bob_keys.encapsulation.public_key, salt
    )

    assert algorithm is WrapAlgorithm.AGREEMENT
    assert unwrap_message_key(
        algorithm, wrapped, salt, bob_keys.agreement_private,
        alice_keys.agreement.public_key, bob_keys.encapsulation_private
    ) == message_key


def test_wrap_falls_back_without_agreement_key(alice_keys, bob_keys):
    message_key = generate_key()
    salt = generate_salt()
    algorithm, wrapped = wrap_message_key(
        message_key, alice_keys.agreement_private, None, bob_keys.encapsulation.public_key, salt
    )

    assert algorithm is WrapAlgorithm.ENCAPSULATION
    assert unwrap_message_key(
        algorithm, wrapped, salt, bob_keys.agreement_private, None, bob_keys.encapsulation_private
    ) == message_key


def test_wrap_falls_back_on_wrong_key_type(alice_keys, bob_keys):
    salt = generate_salt()
    outcome = attempt_agreement_wrap(generate_key(), alice_keys.agreement_private,
                                     bob_keys.encapsulation.public_key, salt)
    assert not outcome.ok
    assert isinstance(outcome.error, WrapError)

    algorithm, _ = wrap_message_key(
        generate_key(), alice_keys.agreement_private, bob_keys.encapsulation.public_key,
        bob_keys.encapsulation.public_key, salt
    )
    assert algorithm is WrapAlgorithm.ENCAPSULATION


def test_unwrap_follows_tag_only(alice_keys, bob_keys):
    """An agreement-wrapped key relabelled as RSA-OAEP must not open"""
    message_key = generate_key()
    salt = generate_salt()
    wrapped = wrap_with_agreement(message_key, alice_keys.agreement_private, bob_keys.agreement.public_key, salt)

    with pytest.raises(UnwrapError):
        unwrap_message_key(
            WrapAlgorithm.ENCAPSULATION, wrapped, salt, bob_keys.agreement_private,
            alice_keys.agreement.public_key, bob_keys.encapsulation_private
        )


def test_wrap_algorithm_tags():
    assert WrapAlgorithm.parse("ECDH") is WrapAlgorithm.AGREEMENT
    assert WrapAlgorithm.parse("RSA-OAEP") is WrapAlgorithm.ENCAPSULATION
    with pytest.raises(EnvelopeFormatError):
        WrapAlgorithm.parse("AES-KW")
    with pytest.raises(EnvelopeFormatError):
        WrapAlgorithm.parse(None)


def test_measure_diffusion_counts_body_and_tag():
    percent = measure_diffusion(SAMPLE, byte_index=0, bit_index=0)
    total_bits = (len(SAMPLE) + TAG_SIZE) * 8
    # Body contributes one bit, the fresh tag at most all of its own
    assert 1 / total_bits * 100 < percent <= (1 + TAG_SIZE * 8) / total_bits * 100
