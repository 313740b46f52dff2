"""
Messaging layer on top of the envelope codec and the relay.

Looks up peer identities, seals outgoing text and files, and opens stored
envelopes into DisplayMessages. One bad envelope never aborts a history:
it turns into a placeholder message.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from e2ee.envelope import (
    DEFAULT_MEDIA_TYPE,
    Envelope,
    FileEnvelope,
    FilePayload,
    InlinePayload,
    ReferencedPayload,
    open_file,
    open_message,
    seal_file,
    seal_message,
)
from e2ee.keys import AgreementPublicKey, IdentityKeys, PublicIdentity
from e2ee.primitives import (
    CryptoError,
    DecryptionError,
    EncodingError,
    EnvelopeFormatError,
    IntegrityError,
    KeyFormatError,
    b64encode,
    bytes_to_text,
    text_to_bytes,
)
from e2ee.wrap import WrapAlgorithm

from .relay import BlobStoreError, NotFoundError, RelayClient, RelayError
from .storage import LocalKeyStore

logger = logging.getLogger(__name__)

# Largest base64 file ciphertext that may ride inside the message row
INLINE_THRESHOLD = 5 * 1024 * 1024

DECRYPTION_FAILED_TEXT = "[Decryption failed]"
INTEGRITY_FAILED_TEXT = "[Integrity check failed]"
MALFORMED_TEXT = "[Unreadable message]"
SENDER_SEALED_TEXT = "[Sealed for recipient]"
FILE_UNAVAILABLE_TEXT = "[File unavailable]"


class PeerNotFoundError(Exception):
    """Peer has no published identity"""
    pass


class MessageStatus(str, Enum):
    OK = "ok"
    DECRYPTION_FAILED = "decryption_failed"
    INTEGRITY_FAILED = "integrity_failed"
    MALFORMED = "malformed"
    SENDER_SEALED = "sender_sealed"


@dataclass
class DecryptedFile:
    name: str
    media_type: str
    size: int
    data: bytes


@dataclass
class DisplayMessage:
    """
    One message as shown to the user.

    Attributes:
        id: Relay row id
        sender_id: Author
        recipient_id: Addressee
        created_at: Relay timestamp
        status: Whether the envelope opened cleanly
        text: Plaintext, or a placeholder when status is not OK
        file: Decrypted attachment, if any
        file_error: Placeholder when the attachment could not be opened
    """
    id: Optional[int]
    sender_id: Optional[str]
    recipient_id: Optional[str]
    created_at: Optional[str]
    status: MessageStatus
    text: str
    file: Optional[DecryptedFile] = None
    file_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == MessageStatus.OK


async def resolve_file_payload(relay: RelayClient, ciphertext: bytes) -> FilePayload:
    """
    Upload file ciphertext, inlining it when the blob store refuses.

    Raises:
        BlobStoreError: Upload failed and the ciphertext is too large to inline
    """
    try:
        reference = await relay.upload_blob(ciphertext)
    except BlobStoreError as e:
        if len(b64encode(ciphertext)) >= INLINE_THRESHOLD:
            raise
        logger.warning("Blob upload failed, sending file inline: %s", e)
        return InlinePayload(ciphertext)
    return ReferencedPayload(reference)


class Messenger:
    """
    Sends and reads end-to-end encrypted messages for one identity.
    """

    def __init__(self, username: str, keys: IdentityKeys, relay: RelayClient,
                 store: Optional[LocalKeyStore] = None):
        """
        Initialize messenger.

        Args:
            username: Our user id on the relay
            keys: Our unlocked identity keys
            relay: Authenticated relay client
            store: Local store for caching peer records (optional)
        """
        self.username = username
        self.keys = keys
        self.relay = relay
        self.store = store
        self.peers: Dict[str, PublicIdentity] = {}

    async def peer(self, user_id: str) -> PublicIdentity:
        """
        Get a peer's public identity, from cache or the directory.

        A changed fingerprint for a peer we have seen before is logged.

        Raises:
            PeerNotFoundError: If the peer has published no keys
        """
        if user_id in self.peers:
            return self.peers[user_id]

        record = await self.relay.lookup_identity(user_id)
        if record is None:
            raise PeerNotFoundError(f"{user_id} has no published keys")

        if self.store:
            cached = self.store.load_peer(user_id)
            verified = False
            if cached:
                if cached["record"].fingerprint != record.fingerprint:
                    logger.warning("Fingerprint of %s changed since last seen", user_id)
                else:
                    verified = cached["verified"]
            self.store.remember_peer(record, verified=verified)

        self.peers[user_id] = record
        return record

    def forget_peer(self, user_id: str):
        self.peers.pop(user_id, None)

    async def _agreement_key(self, user_id: str) -> Optional[AgreementPublicKey]:
        """Peer's ECDH key, or None when unavailable or malformed"""
        try:
            record = await self.peer(user_id)
        except (PeerNotFoundError, RelayError) as e:
            logger.debug("No agreement key for %s: %s", user_id, e)
            return None
        try:
            return record.agreement_public_key()
        except KeyFormatError as e:
            logger.warning("Ignoring malformed agreement key of %s: %s", user_id, e)
            return None

    async def seal_text(self, recipient_id: str, text: str,
                        file: Optional[FileEnvelope] = None) -> Envelope:
        record = await self.peer(recipient_id)
        peer_agreement = await self._agreement_key(recipient_id)
        return await asyncio.to_thread(
            seal_message,
            text_to_bytes(text),
            self.keys.agreement_private,
            peer_agreement,
            record.encapsulation_public_key(),
            file,
        )

    async def send_text(self, chat_id: str, recipient_id: str, text: str) -> Dict:
        """
        Seal and store a text message.

        Returns:
            The stored row
        """
        envelope = await self.seal_text(recipient_id, text)
        return await self.relay.post_message(chat_id, recipient_id, envelope.to_row())

    async def send_file(self, chat_id: str, recipient_id: str, name: str, data: bytes,
                        media_type: str = DEFAULT_MEDIA_TYPE, caption: str = "") -> Dict:
        """
        Seal a file under its own one-time key and send it with a caption.

        Returns:
            The stored row

        Raises:
            BlobStoreError: Upload failed and the file is too large to inline
        """
        record = await self.peer(recipient_id)
        peer_agreement = await self._agreement_key(recipient_id)
        sealed = await asyncio.to_thread(
            seal_file,
            data,
            self.keys.agreement_private,
            peer_agreement,
            record.encapsulation_public_key(),
        )
        payload = await resolve_file_payload(self.relay, sealed.ciphertext)
        file_envelope = FileEnvelope.from_sealed(sealed, payload, name, media_type, len(data))

        envelope = await self.seal_text(recipient_id, caption or name, file=file_envelope)
        return await self.relay.post_message(chat_id, recipient_id, envelope.to_row())

    def _placeholder(self, row: Dict, status: MessageStatus, text: str) -> DisplayMessage:
        return DisplayMessage(
            id=row.get("id"),
            sender_id=row.get("sender_id"),
            recipient_id=row.get("recipient_id"),
            created_at=row.get("created_at"),
            status=status,
            text=text,
        )

    async def read(self, row: Dict) -> DisplayMessage:
        """
        Open one stored row.

        Never raises for bad envelopes; failures become placeholders.
        """
        try:
            envelope = Envelope.from_row(row)
        except EnvelopeFormatError as e:
            logger.warning("Malformed envelope %s: %s", row.get("id"), e)
            return self._placeholder(row, MessageStatus.MALFORMED, MALFORMED_TEXT)

        own_message = row.get("sender_id") == self.username
        # RSA-OAEP wraps only for the recipient's key
        if own_message and envelope.wrap_algorithm == WrapAlgorithm.ENCAPSULATION:
            return self._placeholder(row, MessageStatus.SENDER_SEALED, SENDER_SEALED_TEXT)

        peer_id = row.get("recipient_id") if own_message else row.get("sender_id")
        peer_agreement = await self._agreement_key(peer_id) if peer_id else None

        try:
            plaintext = await asyncio.to_thread(open_message, envelope, self.keys, peer_agreement)
            text = bytes_to_text(plaintext)
        except IntegrityError:
            return self._placeholder(row, MessageStatus.INTEGRITY_FAILED, INTEGRITY_FAILED_TEXT)
        except DecryptionError as e:
            logger.warning("Could not decrypt message %s: %s", row.get("id"), e)
            return self._placeholder(row, MessageStatus.DECRYPTION_FAILED, DECRYPTION_FAILED_TEXT)
        except EncodingError:
            return self._placeholder(row, MessageStatus.MALFORMED, MALFORMED_TEXT)

        message = self._placeholder(row, MessageStatus.OK, text)
        if envelope.file is not None:
            await self._attach_file(message, envelope.file, peer_agreement, own_message)
        return message

    async def _attach_file(self, message: DisplayMessage, file_envelope: FileEnvelope,
                           peer_agreement: Optional[AgreementPublicKey], own_message: bool):
        if own_message and file_envelope.wrap_algorithm == WrapAlgorithm.ENCAPSULATION:
            message.file_error = SENDER_SEALED_TEXT
            return

        ciphertext = None
        if isinstance(file_envelope.payload, ReferencedPayload):
            try:
                ciphertext = await self.relay.download_blob(file_envelope.payload.reference)
            except NotFoundError:
                message.file_error = FILE_UNAVAILABLE_TEXT
                return
            except RelayError as e:
                logger.warning("File download failed: %s", e)
                message.file_error = FILE_UNAVAILABLE_TEXT
                return

        try:
            data = await asyncio.to_thread(open_file, file_envelope, self.keys, peer_agreement, ciphertext)
        except CryptoError as e:
            logger.warning("Could not decrypt attachment %s: %s", file_envelope.name, e)
            message.file_error = DECRYPTION_FAILED_TEXT
            return

        message.file = DecryptedFile(
            name=file_envelope.name,
            media_type=file_envelope.media_type,
            size=file_envelope.size or len(data),
            data=data,
        )

    async def history(self, chat_id: str, after: int = 0, limit: int = 100) -> List[DisplayMessage]:
        """Fetch and open a chat's stored rows, oldest first"""
        rows = await self.relay.list_messages(chat_id, after=after, limit=limit)
        return [await self.read(row) for row in rows]

    async def recent(self, chat_id: str, count: int = 20) -> List[DisplayMessage]:
        """Open the newest `count` rows of a chat, oldest first"""
        rows = await self.relay.list_messages(chat_id, limit=count, latest=True)
        return [await self.read(row) for row in rows]
