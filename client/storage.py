"""
Encrypted local storage for the chat client.

Holds the identity's private keys and decrypted message history on disk,
encrypted under a key derived from the user's passphrase. The unlocked
store is the session-scoped key cache: it hands IdentityKeys to the
messenger, which passes them explicitly into every envelope operation.
"""

import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from e2ee.backup import PBKDF2_ITERATIONS, PrivateKeyBundle, derive_passphrase_key
from e2ee.keys import IdentityKeys, PublicIdentity
from e2ee.primitives import (
    SALT_SIZE,
    DecryptionError,
    aead_decrypt,
    aead_encrypt,
    generate_nonce,
    generate_salt,
)

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = os.environ.get("RELAY_CLIENT_DATA", "client_data")
_UNLOCK_CHECK = b"unlock-check"


class StorageLockedError(Exception):
    """Storage used before unlock()"""
    pass


class LocalKeyStore:
    """
    Manages encrypted local storage for one user.

    All values are AES-GCM encrypted with a key derived from the passphrase.
    """

    def __init__(self, username: str, storage_dir: str = DEFAULT_STORAGE_DIR,
                 iterations: int = PBKDF2_ITERATIONS):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
            iterations: PBKDF2 iterations for the storage key
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.iterations = iterations

        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    @property
    def exists(self) -> bool:
        return self.db_path.exists() and self.salt_path.exists()

    def unlock(self, passphrase: str) -> bool:
        """
        Unlock storage with a passphrase, creating it on first use.

        Args:
            passphrase: User's passphrase

        Returns:
            True if unlocked, False if the passphrase is wrong
        """
        if not self.exists:
            salt = generate_salt()
            self.salt_path.write_bytes(salt)
            self.encryption_key = derive_passphrase_key(passphrase, salt, self.iterations)
            self._init_database()
            self._set_metadata("check", _UNLOCK_CHECK)
            return True

        salt = self.salt_path.read_bytes()
        if len(salt) != SALT_SIZE:
            logger.error("Salt file %s is damaged", self.salt_path)
            return False

        self.encryption_key = derive_passphrase_key(passphrase, salt, self.iterations)
        self._init_database()

        try:
            check = self._get_metadata("check")
        except DecryptionError:
            self.close()
            self.encryption_key = None
            return False
        return check == _UNLOCK_CHECK

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                peer_username TEXT NOT NULL,
                direction TEXT NOT NULL,
                encrypted_content BLOB NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                key_type TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS peers (
                user_id TEXT PRIMARY KEY,
                record TEXT NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0
            )
        """)

        self.db.commit()

    def _require_unlocked(self):
        if not self.encryption_key or not self.db:
            raise StorageLockedError("Storage not unlocked")

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        self._require_unlocked()
        nonce = generate_nonce()
        return nonce + aead_encrypt(self.encryption_key, nonce, data)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        self._require_unlocked()
        return aead_decrypt(self.encryption_key, encrypted_data[:12], encrypted_data[12:])

    def _set_metadata(self, key: str, value: bytes):
        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value))
        )
        self.db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        self._require_unlocked()
        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,))
        result = cursor.fetchone()
        if result:
            return self._decrypt(result[0])
        return None

    def save_identity(self, keys: IdentityKeys):
        """
        Save the identity's private keys.

        Args:
            keys: Keys to persist
        """
        self._require_unlocked()
        bundle = PrivateKeyBundle.from_identity(keys)
        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
            ("identity", self._encrypt(bundle.to_json().encode()))
        )
        self.db.commit()

    def load_identity(self) -> Optional[IdentityKeys]:
        """
        Load the identity's private keys.

        Returns:
            IdentityKeys or None if none were saved
        """
        self._require_unlocked()
        cursor = self.db.cursor()
        cursor.execute("SELECT encrypted_data FROM keys WHERE key_type = ?", ("identity",))
        result = cursor.fetchone()
        if not result:
            return None

        bundle = PrivateKeyBundle.from_json(self._decrypt(result[0]).decode())
        return bundle.to_identity()

    def remember_peer(self, record: PublicIdentity, verified: bool = False):
        """Cache a peer's public record; verified marks an out-of-band fingerprint check"""
        self._require_unlocked()
        cursor = self.db.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO peers (user_id, record, verified) VALUES (?, ?, ?)",
            (record.user_id, json.dumps(record.to_dict()), int(verified))
        )
        self.db.commit()

    def load_peer(self, user_id: str) -> Optional[Dict]:
        """
        Get a cached peer record.

        Returns:
            {"record": PublicIdentity, "verified": bool} or None
        """
        self._require_unlocked()
        cursor = self.db.cursor()
        cursor.execute("SELECT record, verified FROM peers WHERE user_id = ?", (user_id,))
        result = cursor.fetchone()
        if not result:
            return None
        return {"record": PublicIdentity.from_dict(json.loads(result[0])), "verified": bool(result[1])}

    def save_message(self, peer: str, message: str, direction: str):
        """
        Save a message to history.

        Args:
            peer: Username of the peer
            message: Message content
            direction: 'sent' or 'received'
        """
        self._require_unlocked()
        encrypted = self._encrypt(message.encode())
        timestamp = datetime.now(timezone.utc).isoformat()

        cursor = self.db.cursor()
        cursor.execute(
            "INSERT INTO messages (peer_username, direction, encrypted_content, timestamp) VALUES (?, ?, ?, ?)",
            (peer, direction, encrypted, timestamp)
        )
        self.db.commit()

    def get_messages(self, peer: str, limit: int = 50) -> List[Dict]:
        """
        Get message history with a peer.

        Args:
            peer: Username of the peer
            limit: Maximum number of messages to retrieve

        Returns:
            List of message dictionaries, oldest first
        """
        self._require_unlocked()
        cursor = self.db.cursor()
        cursor.execute(
            "SELECT direction, encrypted_content, timestamp FROM messages WHERE peer_username = ? ORDER BY id DESC LIMIT ?",
            (peer, limit)
        )

        messages = []
        for direction, encrypted, timestamp in cursor.fetchall():
            try:
                content = self._decrypt(encrypted).decode()
            except DecryptionError:
                logger.warning("Skipping unreadable history entry for %s", peer)
                continue
            messages.append({
                'direction': direction,
                'content': content,
                'timestamp': timestamp
            })

        return list(reversed(messages))

    def list_conversations(self) -> List[str]:
        """
        List all users we have conversations with.

        Returns:
            List of usernames
        """
        self._require_unlocked()
        cursor = self.db.cursor()
        cursor.execute("SELECT DISTINCT peer_username FROM messages")
        return [row[0] for row in cursor.fetchall()]

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
