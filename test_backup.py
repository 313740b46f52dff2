#!/usr/bin/env python3
"""
Tests for passphrase-sealed key backups.
"""

import json

import pytest

from e2ee.backup import (
    PBKDF2_ITERATIONS,
    PrivateKeyBundle,
    SealedBackup,
    export_keys_sealed,
    import_keys_sealed,
    seal_backup,
    unseal_backup,
)
from e2ee.primitives import BackupRestoreError, b64decode, b64encode
from e2ee.hashing import flip_bit


@pytest.fixture(scope="module")
def backup_text(alice_keys):
    return export_keys_sealed(alice_keys, "correct horse battery staple")


def test_backup_file_format(backup_text):
    document = json.loads(backup_text)
    assert set(document) == {"ciphertext", "iv", "salt", "iterations"}
    assert document["iterations"] == PBKDF2_ITERATIONS
    assert len(b64decode(document["iv"])) == 12
    assert len(b64decode(document["salt"])) == 16


def test_restore_with_correct_passphrase(alice_keys, backup_text):
    restored = import_keys_sealed(backup_text, "correct horse battery staple")
    assert restored.fingerprint() == alice_keys.fingerprint()
    assert restored.private_jwks() == alice_keys.private_jwks()


def test_wrong_passphrase_fails(backup_text):
    with pytest.raises(BackupRestoreError):
        import_keys_sealed(backup_text, "incorrect horse")


def test_corrupted_backup_fails_the_same_way(backup_text):
    document = json.loads(backup_text)
    document["ciphertext"] = b64encode(flip_bit(b64decode(document["ciphertext"]), 5, 1))

    with pytest.raises(BackupRestoreError) as excinfo:
        import_keys_sealed(json.dumps(document), "correct horse battery staple")
    assert str(excinfo.value) == "Invalid passphrase or corrupted backup file"


@pytest.mark.parametrize("text", ["", "not json", "{}", '{"ciphertext": "@@", "iv": "", "salt": ""}'])
def test_malformed_backup_fails(text):
    with pytest.raises(BackupRestoreError):
        import_keys_sealed(text, "whatever")


def test_bundle_json_field_names(alice_keys):
    bundle = PrivateKeyBundle.from_identity(alice_keys)
    data = json.loads(bundle.to_json())
    assert set(data) == {"ecdhPrivateJwk", "rsaPrivateJwk"}
    assert PrivateKeyBundle.from_json(bundle.to_json()) == bundle


def test_seal_refuses_weak_iterations(alice_keys):
    with pytest.raises(ValueError):
        seal_backup(PrivateKeyBundle.from_identity(alice_keys), "pw", iterations=1000)


def test_sealed_backup_round_trip(alice_keys):
    bundle = PrivateKeyBundle.from_identity(alice_keys)
    sealed = seal_backup(bundle, "pw")
    assert unseal_backup(SealedBackup.from_json(sealed.to_json()), "pw") == bundle
