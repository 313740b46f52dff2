"""
HTTP/WebSocket adapter for the relay.

Wraps the relay's REST API (accounts, identity directory, message store,
blob store) and its WebSocket change feed. Everything that passes through
here is either public key material or ciphertext.
"""

import json
import logging
import os
from typing import AsyncIterator, Dict, List, Optional

import httpx
import websockets

from e2ee.keys import PublicIdentity

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = os.environ.get("RELAY_URL", "http://localhost:8000")


class RelayError(Exception):
    """Relay request failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(RelayError):
    """Relay answered 404"""
    pass


class BlobStoreError(RelayError):
    """Blob upload failed"""
    pass


class RelayClient:
    """
    Async client for one relay account.
    """

    def __init__(self, server_url: str = DEFAULT_RELAY_URL, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize relay client.

        Args:
            server_url: Base URL of the relay
            http_client: Pre-built client (tests pass one with an ASGI transport)
        """
        self.server_url = server_url.rstrip("/")
        self.ws_url = self.server_url.replace("http", "ws", 1) + "/ws"
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url)
        self.username: Optional[str] = None
        self.token: Optional[str] = None

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise RelayError(f"Relay unreachable: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(self._detail(response), status_code=404)
        if response.status_code >= 400:
            raise RelayError(self._detail(response), status_code=response.status_code)
        return response

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail", response.text))
        except (ValueError, AttributeError):
            return response.text or f"HTTP {response.status_code}"

    async def _authenticate(self, path: str, username: str, password: str) -> str:
        response = await self._request("POST", path, json={"username": username, "password": password})
        data = response.json()
        self.token = data["access_token"]
        self.username = data["username"]
        return self.token

    async def register(self, username: str, password: str) -> str:
        """
        Register a new account.

        Returns:
            Access token
        """
        return await self._authenticate("/api/register", username, password)

    async def login(self, username: str, password: str) -> str:
        """Log in and keep the access token for later requests"""
        return await self._authenticate("/api/login", username, password)

    async def publish_identity(self, record: PublicIdentity) -> Dict:
        """Publish our public keys and fingerprint"""
        response = await self._request("PUT", "/api/keys", json={
            "display_name": record.display_name,
            "ecdh_public_key_jwk": record.agreement_public_jwk,
            "rsa_public_key_jwk": record.encapsulation_public_jwk,
            "fingerprint": record.fingerprint,
        })
        return response.json()

    async def set_display_name(self, display_name: Optional[str]) -> Dict:
        response = await self._request("PATCH", "/api/keys", json={"display_name": display_name})
        return response.json()

    async def lookup_identity(self, user_id: str) -> Optional[PublicIdentity]:
        """
        Look up a public identity record.

        Returns:
            PublicIdentity or None if the user has none
        """
        try:
            response = await self._request("GET", f"/api/keys/{user_id}")
        except NotFoundError:
            return None
        return PublicIdentity.from_dict(response.json())

    async def list_users(self) -> List[str]:
        response = await self._request("GET", "/api/users")
        return response.json()["users"]

    async def list_online_users(self) -> List[str]:
        response = await self._request("GET", "/api/users/online")
        return response.json()["users"]

    async def open_chat(self, peer: str) -> Dict:
        """Get or create the chat with a peer"""
        response = await self._request("POST", "/api/chats", json={"peer": peer})
        return response.json()

    async def list_chats(self) -> List[Dict]:
        response = await self._request("GET", "/api/chats")
        return response.json()["chats"]

    async def post_message(self, chat_id: str, recipient_id: str, envelope_row: Dict) -> Dict:
        """
        Store an envelope row.

        Returns:
            The stored row, including relay-assigned id and timestamp
        """
        payload = dict(envelope_row, recipient_id=recipient_id)
        response = await self._request("POST", f"/api/chats/{chat_id}/messages", json=payload)
        return response.json()

    async def list_messages(self, chat_id: str, after: int = 0, limit: int = 100,
                            latest: bool = False) -> List[Dict]:
        params = {"after": after, "limit": limit}
        if latest:
            params["latest"] = "true"
        response = await self._request("GET", f"/api/chats/{chat_id}/messages", params=params)
        return response.json()["messages"]

    async def upload_blob(self, data: bytes) -> str:
        """
        Upload encrypted file bytes.

        Returns:
            Blob reference

        Raises:
            BlobStoreError: If the relay refuses or is unreachable
        """
        try:
            response = await self._request("POST", "/api/blobs", content=data)
        except RelayError as e:
            raise BlobStoreError(f"Blob upload failed: {e}", status_code=e.status_code) from e
        return response.json()["ref"]

    async def download_blob(self, ref: str) -> bytes:
        """
        Fetch encrypted file bytes.

        Raises:
            NotFoundError: If the reference is unknown
        """
        response = await self._request("GET", f"/api/blobs/{ref}")
        return response.content

    async def subscribe(self) -> AsyncIterator[Dict]:
        """
        Yield stored rows pushed by the relay as they arrive.

        Raises:
            RelayError: If the WebSocket handshake is rejected
        """
        async with websockets.connect(self.ws_url) as websocket:
            await websocket.send(json.dumps({"type": "auth", "token": self.token}))
            response = json.loads(await websocket.recv())
            if response.get("type") != "auth_success":
                raise RelayError(response.get("message", "WebSocket authentication failed"))

            async for raw in websocket:
                data = json.loads(raw)
                if data.get("type") == "message":
                    yield data["data"]
                elif data.get("type") == "error":
                    logger.warning("Relay error: %s", data.get("message"))

    async def aclose(self):
        await self.http_client.aclose()
