"""
FastAPI relay for end-to-end encrypted chat.

This server:
- Handles user registration and authentication
- Publishes the public identity directory (JWKs + fingerprints)
- Stores message envelopes and encrypted file blobs exactly as received
- Pushes newly stored envelopes to participants over WebSocket

It performs no cryptography on message content: every stored field is
opaque client output.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .auth import Token, get_current_user, issue_token, verify_token
from .database import Database

logger = logging.getLogger(__name__)

MAX_BLOB_BYTES = int(os.environ.get("RELAY_MAX_BLOB_BYTES", 10 * 1024 * 1024))


# Pydantic models for API
class UserRegister(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1)


class UserLogin(BaseModel):
    username: str
    password: str


class IdentityPublish(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=100)
    ecdh_public_key_jwk: Optional[Dict] = None
    rsa_public_key_jwk: Dict
    fingerprint: str = Field(min_length=1, max_length=128)


class DisplayNameUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=100)


class ChatCreate(BaseModel):
    peer: str


class EnvelopeRow(BaseModel):
    recipient_id: str
    ciphertext_base64: str
    iv_base64: str
    wrapped_key_base64: str
    wrap_alg: str
    salt_base64: str
    hash_hex: str
    file_url: Optional[str] = None
    file_meta: Optional[Dict] = None


class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def register(self, username: str, websocket: WebSocket):
        """Store an already accepted connection"""
        self.active_connections[username] = websocket

    def disconnect(self, username: str):
        """Remove a WebSocket connection"""
        self.active_connections.pop(username, None)

    async def send_message(self, username: str, message: dict):
        """Send a message to a specific user, if connected"""
        websocket = self.active_connections.get(username)
        if websocket is None:
            return
        try:
            await websocket.send_json(message)
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.warning("Dropping notification for %s: %s", username, e)
            self.disconnect(username)

    def is_online(self, username: str) -> bool:
        """Check if a user is online"""
        return username in self.active_connections

    def get_online_users(self) -> list[str]:
        """Get list of online users"""
        return list(self.active_connections.keys())


router = APIRouter()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


@router.post("/api/register", response_model=Token)
async def register(user_data: UserRegister, db: Database = Depends(get_db)):
    """
    Register a new user account.

    Keys are published separately via PUT /api/keys once the client has
    generated them.
    """
    user = await db.create_user(username=user_data.username, password=user_data.password)
    if not user:
        raise HTTPException(status_code=400, detail="Username already exists")
    return issue_token(user.username)


@router.post("/api/login", response_model=Token)
async def login(user_data: UserLogin, db: Database = Depends(get_db)):
    """Authenticate a user and return JWT token"""
    user = await db.authenticate_user(user_data.username, user_data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return issue_token(user.username)


@router.put("/api/keys")
async def publish_keys(identity: IdentityPublish, username: str = Depends(get_current_user),
                       db: Database = Depends(get_db)):
    """
    Publish or replace the caller's public identity record.

    The fingerprint is stored as given; clients recompute it themselves.
    """
    return await db.upsert_identity(
        username=username,
        rsa_public_key_jwk=identity.rsa_public_key_jwk,
        fingerprint=identity.fingerprint,
        ecdh_public_key_jwk=identity.ecdh_public_key_jwk,
        display_name=identity.display_name,
    )


@router.patch("/api/keys")
async def update_display_name(update: DisplayNameUpdate, username: str = Depends(get_current_user),
                              db: Database = Depends(get_db)):
    """Change the caller's display name"""
    record = await db.set_display_name(username, update.display_name)
    if not record:
        raise HTTPException(status_code=404, detail="No identity published")
    return record


@router.get("/api/keys/{user_id}")
async def get_keys(user_id: str, db: Database = Depends(get_db)):
    """
    Look up a public identity record.

    This is public - anyone can fetch keys to start a conversation.
    """
    record = await db.get_identity(user_id)
    if not record:
        raise HTTPException(status_code=404, detail="User not found or no keys published")
    return record


@router.get("/api/users")
async def list_users(db: Database = Depends(get_db)):
    """List all registered users"""
    return {"users": await db.list_users()}


@router.get("/api/users/online")
async def list_online_users(manager: ConnectionManager = Depends(get_manager)):
    """List currently online users"""
    return {"users": manager.get_online_users()}


@router.post("/api/chats")
async def open_chat(chat: ChatCreate, username: str = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    """Get or create the chat between the caller and a peer"""
    if chat.peer == username:
        raise HTTPException(status_code=400, detail="Cannot open a chat with yourself")
    if not await db.get_user(chat.peer):
        raise HTTPException(status_code=404, detail="User not found")
    return await db.get_or_create_chat(username, chat.peer)


@router.get("/api/chats")
async def list_chats(username: str = Depends(get_current_user), db: Database = Depends(get_db)):
    """List the caller's chats"""
    return {"chats": await db.list_chats(username)}


async def _participant_chat(db: Database, chat_id: str, username: str):
    chat = await db.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if not chat.has_participant(username):
        raise HTTPException(status_code=403, detail="Not a participant")
    return chat


@router.post("/api/chats/{chat_id}/messages")
async def post_message(chat_id: str, envelope: EnvelopeRow, username: str = Depends(get_current_user),
                       db: Database = Depends(get_db), manager: ConnectionManager = Depends(get_manager)):
    """
    Store an envelope and notify both participants.

    The sender is always the authenticated user; the recipient must be the
    other participant of the chat.
    """
    chat = await _participant_chat(db, chat_id, username)
    if envelope.recipient_id != chat.other_participant(username):
        raise HTTPException(status_code=400, detail="Recipient is not the other participant")

    row = await db.store_message(
        chat_id=chat_id,
        sender_id=username,
        recipient_id=envelope.recipient_id,
        envelope=envelope.model_dump(exclude={"recipient_id"}),
    )

    for participant in (chat.participant_a, chat.participant_b):
        await manager.send_message(participant, {"type": "message", "data": row})

    return row


@router.get("/api/chats/{chat_id}/messages")
async def get_messages(chat_id: str, after: int = 0, limit: int = 100, latest: bool = False,
                       username: str = Depends(get_current_user), db: Database = Depends(get_db)):
    """Read stored envelopes of a chat, oldest first"""
    await _participant_chat(db, chat_id, username)
    limit = max(1, min(limit, 500))
    return {"messages": await db.list_messages(chat_id, after_id=after, limit=limit, latest=latest)}


@router.post("/api/blobs")
async def upload_blob(request: Request, username: str = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    """Store an encrypted file body and return its reference"""
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty blob")
    if len(data) > MAX_BLOB_BYTES:
        raise HTTPException(status_code=413, detail="Blob too large")
    return {"ref": await db.store_blob(username, data)}


@router.get("/api/blobs/{ref}")
async def download_blob(ref: str, username: str = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    """Fetch an encrypted file body; only its uploader and the parties to a referencing message see it"""
    data = await db.get_blob(ref, username)
    if data is None:
        raise HTTPException(status_code=404, detail="Blob not found")
    return Response(content=data, media_type="application/octet-stream")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for change notifications.

    Protocol:
    1. Client sends: {"type": "auth", "token": "jwt_token"}
    2. Server verifies and responds: {"type": "auth_success", "username": "..."}
    3. Server pushes: {"type": "message", "data": {...stored row...}}
    4. Client may send {"type": "ping"} and gets {"type": "pong"}
    """
    manager: ConnectionManager = websocket.app.state.manager
    username = None

    try:
        await websocket.accept()

        auth_data = await websocket.receive_json()
        if auth_data.get("type") != "auth":
            await websocket.send_json({"type": "error", "message": "Authentication required"})
            await websocket.close()
            return

        username = verify_token(auth_data.get("token"))
        if not username:
            await websocket.send_json({"type": "error", "message": "Invalid token"})
            await websocket.close()
            return

        manager.register(username, websocket)
        await websocket.send_json({
            "type": "auth_success",
            "username": username,
            "online_users": manager.get_online_users()
        })

        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Unsupported message type"})

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WebSocket error for %s", username)
    finally:
        if username:
            manager.disconnect(username)


def create_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        database_url: SQLAlchemy URL; defaults to RELAY_DATABASE_URL
    """
    db = Database(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized at %s", db.database_url)
        yield
        await db.dispose()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="Encrypted Envelope Relay",
        description="Ciphertext-only relay for end-to-end encrypted chat",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.manager = ConnectionManager()
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
