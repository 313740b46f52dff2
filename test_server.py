#!/usr/bin/env python3
"""
Tests for the relay server and the HTTP relay client.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from client.messenger import Messenger
from client.relay import NotFoundError, RelayClient, RelayError
from e2ee.envelope import Envelope, seal_message
from server.auth import create_access_token, verify_token
from server.database import room_id_for
from server.main import create_app


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}"


@pytest.fixture
def client(database_url):
    with TestClient(create_app(database_url)) as test_client:
        yield test_client


def register(client, username, password="pw"):
    response = client.post("/api/register", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def publish(client, headers, keys, username):
    record = keys.public_identity(username)
    response = client.put("/api/keys", headers=headers, json={
        "ecdh_public_key_jwk": record.agreement_public_jwk,
        "rsa_public_key_jwk": record.encapsulation_public_jwk,
        "fingerprint": record.fingerprint,
    })
    assert response.status_code == 200, response.text
    return response.json()


def sealed_row(sender_keys, recipient_keys, text=b"hi"):
    envelope = seal_message(
        text,
        sender_keys.agreement_private,
        recipient_keys.agreement.public_key,
        recipient_keys.encapsulation.public_key,
    )
    return envelope, envelope.to_row()


def test_token_round_trip():
    assert verify_token(create_access_token({"sub": "alice"})) == "alice"
    assert verify_token("garbage") is None
    assert verify_token(None) is None


def test_room_id_is_order_independent():
    assert room_id_for("bob", "alice") == room_id_for("alice", "bob") == "alice:bob"


def test_register_and_login(client):
    register(client, "alice", "s3cret")

    response = client.post("/api/register", json={"username": "alice", "password": "other"})
    assert response.status_code == 400

    response = client.post("/api/login", json={"username": "alice", "password": "s3cret"})
    assert response.status_code == 200
    assert response.json()["username"] == "alice"

    response = client.post("/api/login", json={"username": "alice", "password": "wrong"})
    assert response.status_code == 401


def test_users_listing(client):
    register(client, "alice")
    register(client, "bob")
    assert sorted(client.get("/api/users").json()["users"]) == ["alice", "bob"]
    assert client.get("/api/users/online").json()["users"] == []


def test_publish_and_lookup_identity(client, alice_keys):
    headers = register(client, "alice")

    response = client.put("/api/keys", json={"rsa_public_key_jwk": {}, "fingerprint": "x"})
    assert response.status_code == 401

    stored = publish(client, headers, alice_keys, "alice")
    assert stored["fingerprint"] == alice_keys.fingerprint()

    record = client.get("/api/keys/alice").json()
    assert record["ecdh_public_key_jwk"]["crv"] == "P-256"
    assert record["fingerprint"] == alice_keys.fingerprint()

    assert client.get("/api/keys/nobody").status_code == 404


def test_display_name(client, alice_keys):
    headers = register(client, "alice")
    assert client.patch("/api/keys", headers=headers, json={"display_name": "Al"}).status_code == 404

    publish(client, headers, alice_keys, "alice")
    response = client.patch("/api/keys", headers=headers, json={"display_name": "Alice"})
    assert response.status_code == 200
    assert client.get("/api/keys/alice").json()["display_name"] == "Alice"


def test_open_chat(client):
    alice = register(client, "alice")
    bob = register(client, "bob")

    assert client.post("/api/chats", headers=alice, json={"peer": "alice"}).status_code == 400
    assert client.post("/api/chats", headers=alice, json={"peer": "nobody"}).status_code == 404

    chat = client.post("/api/chats", headers=alice, json={"peer": "bob"}).json()
    assert client.post("/api/chats", headers=bob, json={"peer": "alice"}).json()["id"] == chat["id"]
    assert [c["id"] for c in client.get("/api/chats", headers=bob).json()["chats"]] == [chat["id"]]


def test_messages_are_stored_unmodified(client, alice_keys, bob_keys):
    alice = register(client, "alice")
    bob = register(client, "bob")
    chat = client.post("/api/chats", headers=alice, json={"peer": "bob"}).json()

    envelope, row = sealed_row(alice_keys, bob_keys)
    response = client.post(f"/api/chats/{chat['id']}/messages", headers=alice, json=dict(row, recipient_id="bob"))
    assert response.status_code == 200, response.text
    stored = response.json()
    assert stored["sender_id"] == "alice"
    assert stored["recipient_id"] == "bob"

    messages = client.get(f"/api/chats/{chat['id']}/messages", headers=bob).json()["messages"]
    assert len(messages) == 1
    assert Envelope.from_row(messages[0]) == envelope

    after = client.get(f"/api/chats/{chat['id']}/messages", headers=bob, params={"after": stored["id"]})
    assert after.json()["messages"] == []


def test_latest_messages_page(client, alice_keys, bob_keys):
    alice = register(client, "alice")
    register(client, "bob")
    chat = client.post("/api/chats", headers=alice, json={"peer": "bob"}).json()
    _, row = sealed_row(alice_keys, bob_keys)

    url = f"/api/chats/{chat['id']}/messages"
    ids = [client.post(url, headers=alice, json=dict(row, recipient_id="bob")).json()["id"] for _ in range(120)]

    oldest = client.get(url, headers=alice).json()["messages"]
    assert [m["id"] for m in oldest] == ids[:100]

    newest = client.get(url, headers=alice, params={"latest": "true", "limit": 20}).json()["messages"]
    assert [m["id"] for m in newest] == ids[-20:]


def test_message_access_is_participant_only(client, alice_keys, bob_keys):
    alice = register(client, "alice")
    register(client, "bob")
    carol = register(client, "carol")
    chat = client.post("/api/chats", headers=alice, json={"peer": "bob"}).json()
    _, row = sealed_row(alice_keys, bob_keys)

    url = f"/api/chats/{chat['id']}/messages"
    assert client.post(url, headers=alice, json=dict(row, recipient_id="carol")).status_code == 400
    assert client.post(url, headers=carol, json=dict(row, recipient_id="bob")).status_code == 403
    assert client.get(url, headers=carol).status_code == 403
    assert client.get("/api/chats/missing/messages", headers=alice).status_code == 404


def test_blob_round_trip(client):
    alice = register(client, "alice")

    response = client.post("/api/blobs", headers=alice, content=b"\x00ciphertext\xff")
    assert response.status_code == 200
    ref = response.json()["ref"]

    response = client.get(f"/api/blobs/{ref}", headers=alice)
    assert response.status_code == 200
    assert response.content == b"\x00ciphertext\xff"

    assert client.get("/api/blobs/unknown", headers=alice).status_code == 404
    assert client.post("/api/blobs", headers=alice, content=b"").status_code == 400
    assert client.post("/api/blobs", content=b"data").status_code == 401


def test_blob_visible_only_to_message_parties(client, alice_keys, bob_keys):
    alice = register(client, "alice")
    bob = register(client, "bob")
    carol = register(client, "carol")
    chat = client.post("/api/chats", headers=alice, json={"peer": "bob"}).json()
    ref = client.post("/api/blobs", headers=alice, content=b"sealed file").json()["ref"]

    assert client.get(f"/api/blobs/{ref}", headers=bob).status_code == 404

    _, row = sealed_row(alice_keys, bob_keys)
    row = dict(row, recipient_id="bob", file_url=ref, file_meta={"storage_type": "storage"})
    assert client.post(f"/api/chats/{chat['id']}/messages", headers=alice, json=row).status_code == 200

    assert client.get(f"/api/blobs/{ref}", headers=bob).content == b"sealed file"
    assert client.get(f"/api/blobs/{ref}", headers=carol).status_code == 404


def test_websocket_notification(client, alice_keys, bob_keys):
    alice = register(client, "alice")
    bob = register(client, "bob")
    chat = client.post("/api/chats", headers=alice, json={"peer": "bob"}).json()
    _, row = sealed_row(alice_keys, bob_keys)

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": bob["Authorization"].split()[1]})
        assert websocket.receive_json()["type"] == "auth_success"
        assert client.get("/api/users/online").json()["users"] == ["bob"]

        client.post(f"/api/chats/{chat['id']}/messages", headers=alice, json=dict(row, recipient_id="bob"))
        notification = websocket.receive_json()
        assert notification["type"] == "message"
        assert notification["data"]["hash_hex"] == row["hash_hex"]

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_websocket_rejects_bad_token(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": "garbage"})
        response = websocket.receive_json()
        assert response == {"type": "error", "message": "Invalid token"}


def test_messenger_over_relay(database_url, alice_keys, bob_keys):
    """Full path: RelayClient over HTTP into the app, Messenger on both ends"""

    async def scenario():
        app = create_app(database_url)
        await app.state.db.create_tables()
        transport = httpx.ASGITransport(app=app)

        alice_relay = RelayClient("http://relay", httpx.AsyncClient(transport=transport, base_url="http://relay"))
        bob_relay = RelayClient("http://relay", httpx.AsyncClient(transport=transport, base_url="http://relay"))
        try:
            await alice_relay.register("alice", "pw")
            await bob_relay.register("bob", "pw")
            await alice_relay.publish_identity(alice_keys.public_identity("alice"))
            await bob_relay.publish_identity(bob_keys.public_identity("bob"))

            assert await alice_relay.lookup_identity("nobody") is None
            with pytest.raises(RelayError):
                await alice_relay.register("bob", "pw")
            with pytest.raises(NotFoundError):
                await alice_relay.download_blob("missing")

            chat = await alice_relay.open_chat("bob")
            alice = Messenger("alice", alice_keys, alice_relay)
            bob = Messenger("bob", bob_keys, bob_relay)

            await alice.send_text(chat["id"], "bob", "over the wire")
            await alice.send_file(chat["id"], "bob", "a.txt", b"attached", "text/plain")
            return await bob.history(chat["id"])
        finally:
            await alice_relay.aclose()
            await bob_relay.aclose()
            await app.state.db.dispose()

    text, attachment = asyncio.run(scenario())
    assert text.text == "over the wire"
    assert attachment.file.data == b"attached"
    assert attachment.file.name == "a.txt"
