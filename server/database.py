"""
Database models and operations for the relay.

Uses SQLAlchemy with SQLite for accounts, the public identity directory,
chats, message envelopes and encrypted blobs. Every stored payload is an
opaque string or byte buffer produced by a client; the relay never sees
plaintext or private keys.
"""

import os
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from passlib.context import CryptContext
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, LargeBinary, String, Text, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./relay.db"

Base = declarative_base()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class UserKey(Base):
    """Public identity record: both public JWKs and their fingerprint"""
    __tablename__ = "user_keys"

    user_id = Column(String(50), ForeignKey("users.username"), primary_key=True)
    display_name = Column(String(100), nullable=True)
    ecdh_public_key_jwk = Column(JSON, nullable=True)
    rsa_public_key_jwk = Column(JSON, nullable=False)
    fingerprint = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> Dict:
        return {
            'user_id': self.user_id,
            'display_name': self.display_name,
            'ecdh_public_key_jwk': self.ecdh_public_key_jwk,
            'rsa_public_key_jwk': self.rsa_public_key_jwk,
            'fingerprint': self.fingerprint,
            'created_at': _isoformat(self.created_at),
            'updated_at': _isoformat(self.updated_at),
        }


class Chat(Base):
    """A two-party conversation"""
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    room_id = Column(String(120), unique=True, index=True, nullable=False)
    participant_a = Column(String(50), nullable=False)
    participant_b = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    def has_participant(self, username: str) -> bool:
        return username in (self.participant_a, self.participant_b)

    def other_participant(self, username: str) -> str:
        return self.participant_b if username == self.participant_a else self.participant_a

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'room_id': self.room_id,
            'participant_a': self.participant_a,
            'participant_b': self.participant_b,
            'created_at': _isoformat(self.created_at),
        }


class Message(Base):
    """One stored envelope; fields are exactly what the client sent"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(36), ForeignKey("chats.id"), index=True, nullable=False)
    sender_id = Column(String(50), nullable=False)
    recipient_id = Column(String(50), nullable=False)
    ciphertext_base64 = Column(Text, nullable=False)
    iv_base64 = Column(Text, nullable=False)
    wrapped_key_base64 = Column(Text, nullable=False)
    wrap_alg = Column(String(32), nullable=False)
    salt_base64 = Column(Text, nullable=False)
    hash_hex = Column(String(128), nullable=False)
    file_url = Column(String(255), nullable=True)
    file_meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'chat_id': self.chat_id,
            'sender_id': self.sender_id,
            'recipient_id': self.recipient_id,
            'ciphertext_base64': self.ciphertext_base64,
            'iv_base64': self.iv_base64,
            'wrapped_key_base64': self.wrapped_key_base64,
            'wrap_alg': self.wrap_alg,
            'salt_base64': self.salt_base64,
            'hash_hex': self.hash_hex,
            'file_url': self.file_url,
            'file_meta': self.file_meta,
            'created_at': _isoformat(self.created_at),
        }


class Blob(Base):
    """Encrypted file content referenced from a message's file_url"""
    __tablename__ = "blobs"

    ref = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner = Column(String(50), nullable=False)
    data = Column(LargeBinary, nullable=False)
    size = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


def room_id_for(user_a: str, user_b: str) -> str:
    """Order-independent room key for a pair of users"""
    return ":".join(sorted((user_a, user_b)))


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL; defaults to RELAY_DATABASE_URL
        """
        self.database_url = database_url or os.environ.get("RELAY_DATABASE_URL", DEFAULT_DATABASE_URL)
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(username=username, hashed_password=User.hash_password(password))
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """
        Get user by username.

        Args:
            username: Username to look up

        Returns:
            User object or None if not found
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def list_users(self) -> List[str]:
        """
        List all registered usernames.

        Returns:
            List of usernames
        """
        async with self.async_session() as session:
            result = await session.execute(select(User.username).where(User.is_active.is_(True)))
            return [row[0] for row in result.all()]

    async def upsert_identity(self, username: str, rsa_public_key_jwk: Dict, fingerprint: str,
                              ecdh_public_key_jwk: Optional[Dict] = None,
                              display_name: Optional[str] = None) -> Dict:
        """
        Store or update a user's public identity record.

        Args:
            username: Owner of the record
            rsa_public_key_jwk: Encapsulation public key
            fingerprint: Fingerprint as computed by the client
            ecdh_public_key_jwk: Agreement public key, if any
            display_name: Optional display name; kept if not given

        Returns:
            The stored record
        """
        async with self.async_session() as session:
            result = await session.execute(select(UserKey).where(UserKey.user_id == username))
            record = result.scalar_one_or_none()

            if record:
                record.ecdh_public_key_jwk = ecdh_public_key_jwk
                record.rsa_public_key_jwk = rsa_public_key_jwk
                record.fingerprint = fingerprint
                if display_name is not None:
                    record.display_name = display_name
                record.updated_at = _utcnow()
            else:
                record = UserKey(
                    user_id=username,
                    display_name=display_name,
                    ecdh_public_key_jwk=ecdh_public_key_jwk,
                    rsa_public_key_jwk=rsa_public_key_jwk,
                    fingerprint=fingerprint,
                )
                session.add(record)

            await session.commit()
            await session.refresh(record)
            return record.to_dict()

    async def set_display_name(self, username: str, display_name: Optional[str]) -> Optional[Dict]:
        """Change only the display name; None if the user has no record"""
        async with self.async_session() as session:
            result = await session.execute(select(UserKey).where(UserKey.user_id == username))
            record = result.scalar_one_or_none()
            if not record:
                return None

            record.display_name = display_name
            record.updated_at = _utcnow()
            await session.commit()
            await session.refresh(record)
            return record.to_dict()

    async def get_identity(self, username: str) -> Optional[Dict]:
        """
        Look up a public identity record.

        Returns:
            Record dictionary or None if not found
        """
        async with self.async_session() as session:
            result = await session.execute(select(UserKey).where(UserKey.user_id == username))
            record = result.scalar_one_or_none()
            return record.to_dict() if record else None

    async def get_or_create_chat(self, user_a: str, user_b: str) -> Dict:
        """Return the chat between two users, creating it on first use"""
        room_id = room_id_for(user_a, user_b)
        async with self.async_session() as session:
            result = await session.execute(select(Chat).where(Chat.room_id == room_id))
            chat = result.scalar_one_or_none()
            if not chat:
                first, second = sorted((user_a, user_b))
                chat = Chat(room_id=room_id, participant_a=first, participant_b=second)
                session.add(chat)
                await session.commit()
                await session.refresh(chat)
            return chat.to_dict()

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        async with self.async_session() as session:
            result = await session.execute(select(Chat).where(Chat.id == chat_id))
            return result.scalar_one_or_none()

    async def list_chats(self, username: str) -> List[Dict]:
        async with self.async_session() as session:
            result = await session.execute(
                select(Chat)
                .where(or_(Chat.participant_a == username, Chat.participant_b == username))
                .order_by(Chat.created_at)
            )
            return [chat.to_dict() for chat in result.scalars().all()]

    async def store_message(self, chat_id: str, sender_id: str, recipient_id: str, envelope: Dict) -> Dict:
        """
        Persist an envelope row.

        Args:
            chat_id: Chat the message belongs to
            sender_id: Authenticated sender
            recipient_id: The other participant
            envelope: Envelope fields, stored unmodified

        Returns:
            The stored row
        """
        async with self.async_session() as session:
            message = Message(
                chat_id=chat_id,
                sender_id=sender_id,
                recipient_id=recipient_id,
                ciphertext_base64=envelope['ciphertext_base64'],
                iv_base64=envelope['iv_base64'],
                wrapped_key_base64=envelope['wrapped_key_base64'],
                wrap_alg=envelope['wrap_alg'],
                salt_base64=envelope['salt_base64'],
                hash_hex=envelope['hash_hex'],
                file_url=envelope.get('file_url'),
                file_meta=envelope.get('file_meta'),
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message.to_dict()

    async def list_messages(self, chat_id: str, after_id: int = 0, limit: int = 100,
                            latest: bool = False) -> List[Dict]:
        """
        Get stored envelopes of a chat in insertion order.

        Args:
            chat_id: Chat to read
            after_id: Only rows with a larger id
            limit: Maximum number of rows
            latest: Take the newest `limit` rows instead of the oldest
        """
        query = select(Message).where(Message.chat_id == chat_id, Message.id > after_id)
        if latest:
            query = query.order_by(Message.id.desc())
        else:
            query = query.order_by(Message.id)

        async with self.async_session() as session:
            result = await session.execute(query.limit(limit))
            messages = result.scalars().all()

        if latest:
            messages = list(reversed(messages))
        return [message.to_dict() for message in messages]

    async def store_blob(self, owner: str, data: bytes) -> str:
        """Store encrypted bytes and return their reference"""
        async with self.async_session() as session:
            blob = Blob(ref=str(uuid.uuid4()), owner=owner, data=data, size=len(data))
            session.add(blob)
            await session.commit()
            return blob.ref

    async def get_blob(self, ref: str, username: str) -> Optional[bytes]:
        """
        Get blob bytes for its uploader or for a party to a message that
        references it; None when missing or not visible to username
        """
        async with self.async_session() as session:
            result = await session.execute(select(Blob).where(Blob.ref == ref))
            blob = result.scalar_one_or_none()
            if blob is None:
                return None
            if blob.owner == username:
                return blob.data

            result = await session.execute(
                select(Message.id)
                .where(
                    Message.file_url == ref,
                    or_(Message.sender_id == username, Message.recipient_id == username),
                )
                .limit(1)
            )
            return blob.data if result.scalar_one_or_none() is not None else None
