"""
Message Envelope Codec

An envelope carries everything needed to verify and decrypt one message
except private keys: AES-GCM ciphertext, nonce, salt, the wrapped one-time
key, the wrap algorithm tag and a SHA-256 integrity hash over the base64
ciphertext. A message may carry a file sub-envelope sealed under its own
one-time key, with the file ciphertext either inline or held by a blob
store and referenced.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from .hashing import sha256_hex
from .keys import (
    AgreementPrivateKey,
    AgreementPublicKey,
    EncapsulationPublicKey,
    IdentityKeys,
)
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
    DecryptionError,
    EncodingError,
    EnvelopeFormatError,
    IntegrityError,
    UnwrapError,
    aead_decrypt,
    aead_encrypt,
    b64decode,
    b64encode,
    constant_time_compare,
    generate_key,
    generate_nonce,
    generate_salt,
)
from .wrap import WrapAlgorithm, unwrap_message_key, wrap_message_key

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"
STORAGE_INLINE = "inline"
STORAGE_REFERENCED = "storage"


def _check_params(nonce: bytes, salt: bytes) -> None:
    if len(nonce) != NONCE_SIZE:
        raise EnvelopeFormatError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    if len(salt) != SALT_SIZE:
        raise EnvelopeFormatError(f"Salt must be {SALT_SIZE} bytes, got {len(salt)}")


def _decode_field(data: Dict, name: str) -> bytes:
    if name not in data or data[name] is None:
        raise EnvelopeFormatError(f"Envelope is missing '{name}'")
    try:
        return b64decode(data[name])
    except EncodingError as e:
        raise EnvelopeFormatError(f"Envelope field '{name}' is not base64") from e


@dataclass(frozen=True)
class SealedPayload:
    """Ciphertext plus the parameters needed to open it"""
    ciphertext: bytes
    nonce: bytes
    salt: bytes
    wrapped_key: bytes
    wrap_algorithm: WrapAlgorithm


@dataclass(frozen=True)
class InlinePayload:
    """File ciphertext embedded in the envelope"""
    ciphertext: bytes


@dataclass(frozen=True)
class ReferencedPayload:
    """File ciphertext held by a blob store"""
    reference: str


FilePayload = Union[InlinePayload, ReferencedPayload]


@dataclass(frozen=True)
class FileEnvelope:
    """
    File sub-envelope.

    Attributes:
        nonce: AES-GCM nonce of the file ciphertext
        salt: Salt used for wrapping the file key
        wrapped_key: The file's one-time key, wrapped
        wrap_algorithm: How wrapped_key was produced
        payload: InlinePayload or ReferencedPayload
        name: Original file name
        media_type: Original media type
        size: Plaintext size in bytes
    """
    nonce: bytes
    salt: bytes
    wrapped_key: bytes
    wrap_algorithm: WrapAlgorithm
    payload: FilePayload
    name: str = "file"
    media_type: str = DEFAULT_MEDIA_TYPE
    size: int = 0

    def __post_init__(self):
        _check_params(self.nonce, self.salt)

    @classmethod
    def from_sealed(cls, sealed: SealedPayload, payload: FilePayload, name: str,
                    media_type: str = DEFAULT_MEDIA_TYPE, size: int = 0) -> 'FileEnvelope':
        return cls(
            nonce=sealed.nonce,
            salt=sealed.salt,
            wrapped_key=sealed.wrapped_key,
            wrap_algorithm=sealed.wrap_algorithm,
            payload=payload,
            name=name,
            media_type=media_type,
            size=size,
        )

    @property
    def is_inline(self) -> bool:
        return isinstance(self.payload, InlinePayload)

    def to_meta(self) -> Tuple[Optional[str], Dict]:
        """
        Encode for the message row.

        Returns:
            Tuple of (file_url, file_meta)
        """
        meta = {
            'name': self.name,
            'type': self.media_type,
            'size': self.size,
            'iv': b64encode(self.nonce),
            'salt': b64encode(self.salt),
            'wrapped_key': b64encode(self.wrapped_key),
            'wrap_alg': self.wrap_algorithm.value,
        }
        if isinstance(self.payload, InlinePayload):
            meta['storage_type'] = STORAGE_INLINE
            meta['encrypted_data_base64'] = b64encode(self.payload.ciphertext)
            return None, meta

        meta['storage_type'] = STORAGE_REFERENCED
        return self.payload.reference, meta

    @classmethod
    def from_meta(cls, file_url: Optional[str], meta: Dict,
                  default_algorithm: Optional[WrapAlgorithm] = None) -> 'FileEnvelope':
        """
        Decode from the message row.

        Rows written before the file tag existed have no 'wrap_alg' in
        file_meta; those use the message's own tag.
        """
        if not isinstance(meta, dict):
            raise EnvelopeFormatError("file_meta must be an object")

        if meta.get('storage_type') == STORAGE_INLINE and meta.get('encrypted_data_base64'):
            payload = InlinePayload(_decode_field(meta, 'encrypted_data_base64'))
        elif file_url:
            payload = ReferencedPayload(file_url)
        else:
            raise EnvelopeFormatError("File envelope has neither inline data nor a reference")

        algorithm = meta.get('wrap_alg') or default_algorithm
        try:
            size = int(meta.get('size') or 0)
        except (TypeError, ValueError) as e:
            raise EnvelopeFormatError("file size is not an integer") from e

        return cls(
            nonce=_decode_field(meta, 'iv'),
            salt=_decode_field(meta, 'salt'),
            wrapped_key=_decode_field(meta, 'wrapped_key'),
            wrap_algorithm=WrapAlgorithm.parse(algorithm),
            payload=payload,
            name=meta.get('name') or "file",
            media_type=meta.get('type') or DEFAULT_MEDIA_TYPE,
            size=size,
        )


@dataclass(frozen=True)
class Envelope:
    """
    Message envelope as stored by the relay.

    Immutable once sealed; anyone holding a matching private key can open it.
    """
    ciphertext: bytes
    nonce: bytes
    salt: bytes
    wrapped_key: bytes
    wrap_algorithm: WrapAlgorithm
    integrity_hash: str
    file: Optional[FileEnvelope] = None

    def __post_init__(self):
        _check_params(self.nonce, self.salt)

    def to_row(self) -> Dict:
        """Flatten to the message store's field set"""
        file_url, file_meta = (None, None)
        if self.file is not None:
            file_url, file_meta = self.file.to_meta()

        return {
            'ciphertext_base64': b64encode(self.ciphertext),
            'iv_base64': b64encode(self.nonce),
            'salt_base64': b64encode(self.salt),
            'wrapped_key_base64': b64encode(self.wrapped_key),
            'wrap_alg': self.wrap_algorithm.value,
            'hash_hex': self.integrity_hash,
            'file_url': file_url,
            'file_meta': file_meta,
        }

    @classmethod
    def from_row(cls, row: Dict) -> 'Envelope':
        """
        Parse a message row; storage-layer fields (id, chat_id, ...) are ignored.

        Raises:
            EnvelopeFormatError: On missing/undecodable fields or an unknown tag
        """
        if not isinstance(row, dict):
            raise EnvelopeFormatError("Envelope row must be an object")

        algorithm = WrapAlgorithm.parse(row.get('wrap_alg'))
        integrity_hash = row.get('hash_hex')
        if not isinstance(integrity_hash, str):
            raise EnvelopeFormatError("Envelope is missing 'hash_hex'")

        file_envelope = None
        if row.get('file_meta'):
            file_envelope = FileEnvelope.from_meta(row.get('file_url'), row['file_meta'], algorithm)

        return cls(
            ciphertext=_decode_field(row, 'ciphertext_base64'),
            nonce=_decode_field(row, 'iv_base64'),
            salt=_decode_field(row, 'salt_base64'),
            wrapped_key=_decode_field(row, 'wrapped_key_base64'),
            wrap_algorithm=algorithm,
            integrity_hash=integrity_hash,
            file=file_envelope,
        )


def compute_integrity_hash(ciphertext: bytes) -> str:
    """SHA-256 hex over the base64 text of the ciphertext"""
    return sha256_hex(b64encode(ciphertext))


def verify_integrity(envelope: Envelope) -> bool:
    """Check the stored hash without decrypting; needs no keys"""
    expected = compute_integrity_hash(envelope.ciphertext).encode("utf-8")
    return constant_time_compare(expected, envelope.integrity_hash.encode("utf-8"))


def seal_payload(plaintext: bytes, own_agreement_private: Optional[AgreementPrivateKey],
                 peer_agreement_public: Optional[AgreementPublicKey],
                 peer_encapsulation_public: EncapsulationPublicKey) -> SealedPayload:
    """
    Encrypt under a fresh one-time key and nonce, then wrap the key.

    Args:
        plaintext: Data to seal
        own_agreement_private: Sender's agreement private key
        peer_agreement_public: Recipient's agreement public key (may be None)
        peer_encapsulation_public: Recipient's RSA-OAEP public key

    Returns:
        SealedPayload
    """
    message_key = generate_key()
    nonce = generate_nonce()
    salt = generate_salt()

    ciphertext = aead_encrypt(message_key, nonce, plaintext)
    algorithm, wrapped_key = wrap_message_key(
        message_key, own_agreement_private, peer_agreement_public, peer_encapsulation_public, salt
    )

    return SealedPayload(
        ciphertext=ciphertext,
        nonce=nonce,
        salt=salt,
        wrapped_key=wrapped_key,
        wrap_algorithm=algorithm,
    )


def open_payload(ciphertext: bytes, nonce: bytes, salt: bytes, wrapped_key: bytes,
                 algorithm: WrapAlgorithm, own_keys: IdentityKeys,
                 peer_agreement_public: Optional[AgreementPublicKey]) -> bytes:
    """
    Unwrap the one-time key by its tag and decrypt.

    Raises:
        DecryptionError: If unwrapping or AEAD verification fails
    """
    try:
        message_key = unwrap_message_key(
            algorithm,
            wrapped_key,
            salt,
            own_keys.agreement_private,
            peer_agreement_public,
            own_keys.encapsulation_private,
        )
    except UnwrapError as e:
        raise DecryptionError(f"Message key unwrap failed: {e}") from e
    if len(message_key) != KEY_SIZE:
        raise DecryptionError(f"Unwrapped key has wrong size: {len(message_key)} bytes")

    return aead_decrypt(message_key, nonce, ciphertext)


def seal_message(plaintext: bytes, own_agreement_private: Optional[AgreementPrivateKey],
                 peer_agreement_public: Optional[AgreementPublicKey],
                 peer_encapsulation_public: EncapsulationPublicKey,
                 file: Optional[FileEnvelope] = None) -> Envelope:
    """
    Seal a message for one recipient.

    The integrity hash covers the encoded ciphertext so any holder can detect
    relay-side corruption without decrypting.

    Returns:
        Envelope
    """
    sealed = seal_payload(plaintext, own_agreement_private, peer_agreement_public, peer_encapsulation_public)
    return Envelope(
        ciphertext=sealed.ciphertext,
        nonce=sealed.nonce,
        salt=sealed.salt,
        wrapped_key=sealed.wrapped_key,
        wrap_algorithm=sealed.wrap_algorithm,
        integrity_hash=compute_integrity_hash(sealed.ciphertext),
        file=file,
    )


def open_message(envelope: Envelope, own_keys: IdentityKeys,
                 peer_agreement_public: Optional[AgreementPublicKey]) -> bytes:
    """
    Verify and decrypt a message envelope.

    The integrity hash is checked first but decryption is attempted either
    way, so the two failures are reported separately.

    Args:
        envelope: Envelope to open
        own_keys: Our identity keys (recipient, or the sender reopening its
            own agreement-wrapped message)
        peer_agreement_public: The other party's agreement public key

    Returns:
        Plaintext

    Raises:
        DecryptionError: AEAD/unwrap failure; integrity_ok tells whether the
            stored hash matched
        IntegrityError: Ciphertext authentic but the stored hash is wrong
    """
    integrity_ok = verify_integrity(envelope)
    if not integrity_ok:
        logger.warning("Envelope integrity hash mismatch")

    try:
        plaintext = open_payload(
            envelope.ciphertext,
            envelope.nonce,
            envelope.salt,
            envelope.wrapped_key,
            envelope.wrap_algorithm,
            own_keys,
            peer_agreement_public,
        )
    except DecryptionError as e:
        raise DecryptionError(str(e), integrity_ok=integrity_ok) from e

    if not integrity_ok:
        raise IntegrityError("Stored integrity hash does not match the ciphertext")
    return plaintext


def seal_file(data: bytes, own_agreement_private: Optional[AgreementPrivateKey],
              peer_agreement_public: Optional[AgreementPublicKey],
              peer_encapsulation_public: EncapsulationPublicKey) -> SealedPayload:
    """
    Seal file contents under their own one-time key.

    Where the ciphertext lives (inline or blob store) is the caller's call;
    it builds the FileEnvelope with FileEnvelope.from_sealed.
    """
    return seal_payload(data, own_agreement_private, peer_agreement_public, peer_encapsulation_public)


def open_file(file_envelope: FileEnvelope, own_keys: IdentityKeys,
              peer_agreement_public: Optional[AgreementPublicKey],
              ciphertext: Optional[bytes] = None) -> bytes:
    """
    Decrypt a file sub-envelope.

    Args:
        file_envelope: The sub-envelope
        own_keys: Our identity keys
        peer_agreement_public: The other party's agreement public key
        ciphertext: Fetched bytes for a referenced payload; ignored for inline

    Raises:
        ValueError: If the payload is referenced and no ciphertext was given
        DecryptionError: If unwrapping or AEAD verification fails
    """
    if isinstance(file_envelope.payload, InlinePayload):
        ciphertext = file_envelope.payload.ciphertext
    elif ciphertext is None:
        raise ValueError("Referenced file payload must be fetched before opening")

    return open_payload(
        ciphertext,
        file_envelope.nonce,
        file_envelope.salt,
        file_envelope.wrapped_key,
        file_envelope.wrap_algorithm,
        own_keys,
        peer_agreement_public,
    )
