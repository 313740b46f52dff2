#!/usr/bin/env python3
"""
Tests for the self-test report and the /analytics command.
"""

import asyncio

import pytest

from client.cli_client import ChatClient
from e2ee.analytics import benchmark_aead, describe_rows, run_self_test
from e2ee.envelope import seal_message
from e2ee.primitives import TAG_SIZE
from test_client import CHAT_ID, FakeRelay


def sealed_row(alice_keys, bob_keys, row_id, text=b"hi"):
    envelope = seal_message(
        text,
        alice_keys.agreement_private,
        bob_keys.agreement.public_key,
        bob_keys.encapsulation.public_key,
    )
    return dict(envelope.to_row(), id=row_id, chat_id=CHAT_ID, sender_id="alice", recipient_id="bob")


def test_benchmark_aead_counts_runs():
    bench = benchmark_aead(b"x" * 64, iterations=5)
    assert bench.size == 64
    assert bench.encrypt.count == bench.decrypt.count == 5
    assert 0 <= bench.encrypt.minimum <= bench.encrypt.mean <= bench.encrypt.maximum

    with pytest.raises(ValueError):
        benchmark_aead(b"x", iterations=0)


def test_self_test_report():
    report = run_self_test(text_iterations=3, file_iterations=2, file_size=4096, collision_samples=256)

    assert report.text.encrypt.count == 3
    assert report.file.size == 4096 and report.file.decrypt.count == 2
    # One body bit plus a fresh tag; the tag alone is at most 128 bits
    assert 0 < report.diffusion < (1 + TAG_SIZE * 8) / ((26 + TAG_SIZE) * 8) * 100 + 1
    assert report.confusion >= 30.0
    assert report.collisions.tested == 256
    assert report.collisions.collisions == 0


def test_describe_rows(alice_keys, bob_keys):
    good = sealed_row(alice_keys, bob_keys, 1)
    tampered = dict(sealed_row(alice_keys, bob_keys, 2), hash_hex="0" * 64)
    duplicate = dict(sealed_row(alice_keys, bob_keys, 3), hash_hex=good["hash_hex"])
    broken = {"id": 4, "sender_id": "alice", "wrap_alg": "ROT13"}

    details = describe_rows([good, tampered, duplicate, broken])

    assert details[0].wrap_algorithm == "ECDH"
    assert details[0].ciphertext_size == 2 + TAG_SIZE
    assert details[0].integrity_ok
    assert not details[0].hash_unique
    assert not details[1].integrity_ok and details[1].hash_unique
    assert not details[2].integrity_ok
    assert not details[3].integrity_ok and details[3].ciphertext_size == 0
    assert not any(d.has_file for d in details)


def test_analytics_command(alice_keys, bob_keys, tmp_path, capsys):
    backend = {"directory": {}, "rows": [sealed_row(alice_keys, bob_keys, 1, b"hello")], "blobs": {}}
    client = ChatClient(server_url="http://relay", storage_dir=str(tmp_path))
    client.relay = FakeRelay("alice", backend)
    client.username = "alice"
    client.current_chat = {"id": CHAT_ID, "peer": "bob"}

    asyncio.run(client._handle_command("/analytics"))
    output = capsys.readouterr().out

    assert "Text (" in output and "File (" in output
    assert "Diffusion:" in output and "Confusion:" in output
    assert "Hash collisions: 0 in 2048 samples" in output
    assert "Envelopes with bob:" in output
    assert "[1] alice: ECDH, 21 bytes" in output
