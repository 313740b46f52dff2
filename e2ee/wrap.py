"""
Key Agreement and Key Wrapping

Every message is encrypted under a fresh one-time AES key. That key is
wrapped for the recipient in one of two ways:

- AGREEMENT ("ECDH"): ECDH between our agreement key and the peer's, run
  through HKDF-SHA256 with the per-message salt, gives a single-use KEK. The
  message key is AES-GCM encrypted under it with salt[:12] as the nonce.
- ENCAPSULATION ("RSA-OAEP"): the message key is RSA-OAEP encrypted directly
  to the peer's encapsulation key.

The sender always tries AGREEMENT first and falls back to ENCAPSULATION; the
receiver dispatches strictly on the recorded tag.

Reusing salt bytes as the wrap nonce is sound only while each KEK wraps
exactly one key. The KEK is derived inside each wrap call and never handed
out, so a KEK is never reused across wraps.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .keys import (
    AgreementPrivateKey,
    AgreementPublicKey,
    EncapsulationPrivateKey,
    EncapsulationPublicKey,
)
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    EnvelopeFormatError,
    UnwrapError,
    WrapError,
)

logger = logging.getLogger(__name__)

WRAP_INFO = b"wrap"


class WrapAlgorithm(str, Enum):
    """How a message key was wrapped; the value is the wire tag"""
    AGREEMENT = "ECDH"
    ENCAPSULATION = "RSA-OAEP"

    @classmethod
    def parse(cls, value) -> 'WrapAlgorithm':
        """
        Decode a wire tag.

        Raises:
            EnvelopeFormatError: For anything other than the two known tags
        """
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value:
                return member
        raise EnvelopeFormatError(f"Unknown wrap algorithm: {value!r}")


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _wrap_nonce(salt: bytes) -> bytes:
    if salt is None or len(salt) < NONCE_SIZE:
        raise ValueError(f"Salt must be at least {NONCE_SIZE} bytes")
    return salt[:NONCE_SIZE]


def derive_kek(own_private: AgreementPrivateKey, peer_public: AgreementPublicKey,
               salt: bytes, info: bytes = WRAP_INFO) -> bytes:
    """
    Derive a key-encryption key from an ECDH agreement.

    Both parties get the same KEK: DH(a_priv, b_pub) == DH(b_priv, a_pub).

    Args:
        own_private: Our agreement private key
        peer_public: Counterparty's agreement public key
        salt: Per-message salt, used as the HKDF salt
        info: HKDF context string

    Returns:
        32-byte AES key, only for wrapping/unwrapping
    """
    if not isinstance(own_private, ec.EllipticCurvePrivateKey):
        raise WrapError("Agreement private key is missing or not an EC key")
    if not isinstance(peer_public, ec.EllipticCurvePublicKey):
        raise WrapError("Peer agreement public key is missing or not an EC key")

    shared_secret = own_private.exchange(ec.ECDH(), peer_public)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        info=info,
    )
    return hkdf.derive(shared_secret)


def wrap_with_agreement(message_key: bytes, own_private: AgreementPrivateKey,
                        peer_public: AgreementPublicKey, salt: bytes) -> bytes:
    """
    Wrap a message key under an ECDH/HKDF-derived KEK.

    Returns:
        wrapped key (key + 16-byte tag)
    """
    kek = derive_kek(own_private, peer_public, salt)
    return AESGCM(kek).encrypt(_wrap_nonce(salt), message_key, None)


def unwrap_with_agreement(wrapped_key: bytes, own_private: AgreementPrivateKey,
                          peer_public: AgreementPublicKey, salt: bytes) -> bytes:
    """
    Unwrap a message key wrapped by wrap_with_agreement.

    Raises:
        UnwrapError: If the tag fails (tampered key, wrong salt or keypair)
    """
    try:
        kek = derive_kek(own_private, peer_public, salt)
        return AESGCM(kek).decrypt(_wrap_nonce(salt), wrapped_key, None)
    except InvalidTag as e:
        raise UnwrapError("Agreement unwrap failed: authentication tag mismatch") from e
    except (WrapError, ValueError) as e:
        if isinstance(e, UnwrapError):
            raise
        raise UnwrapError(f"Agreement unwrap failed: {e}") from e


def wrap_with_encapsulation(message_key: bytes, peer_public: EncapsulationPublicKey) -> bytes:
    """Wrap a message key with RSA-OAEP (SHA-256) to the peer's key"""
    if peer_public is None:
        raise WrapError("Peer encapsulation public key is missing")
    try:
        return peer_public.encrypt(message_key, _oaep())
    except (ValueError, TypeError, AttributeError) as e:
        raise WrapError(f"Encapsulation wrap failed: {e}") from e


def unwrap_with_encapsulation(wrapped_key: bytes, own_private: EncapsulationPrivateKey) -> bytes:
    """
    Unwrap an RSA-OAEP wrapped message key.

    Raises:
        UnwrapError: If OAEP decoding fails
    """
    if own_private is None:
        raise UnwrapError("Encapsulation private key is missing")
    try:
        return own_private.decrypt(wrapped_key, _oaep())
    except (ValueError, TypeError) as e:
        raise UnwrapError("Encapsulation unwrap failed") from e


@dataclass(frozen=True)
class WrapOutcome:
    """
    Result of a wrap attempt: either wrapped_key or error is set.
    """
    algorithm: WrapAlgorithm
    wrapped_key: Optional[bytes] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt_agreement_wrap(message_key: bytes, own_private: Optional[AgreementPrivateKey],
                           peer_public: Optional[AgreementPublicKey], salt: bytes) -> WrapOutcome:
    """
    Try the agreement path without raising.

    Any failure (missing key, derivation error, wrap error) comes back as
    the error variant for the caller to act on.
    """
    try:
        wrapped = wrap_with_agreement(message_key, own_private, peer_public, salt)
    except Exception as e:
        return WrapOutcome(algorithm=WrapAlgorithm.AGREEMENT, error=e)
    return WrapOutcome(algorithm=WrapAlgorithm.AGREEMENT, wrapped_key=wrapped)


def wrap_message_key(message_key: bytes, own_private: Optional[AgreementPrivateKey],
                     peer_agreement_public: Optional[AgreementPublicKey],
                     peer_encapsulation_public: EncapsulationPublicKey,
                     salt: bytes) -> Tuple[WrapAlgorithm, bytes]:
    """
    Sender policy: agreement first, encapsulation on failure.

    Returns:
        Tuple of (algorithm tag, wrapped key)

    Raises:
        WrapError: If the encapsulation fallback fails too
    """
    outcome = attempt_agreement_wrap(message_key, own_private, peer_agreement_public, salt)
    if outcome.ok:
        return outcome.algorithm, outcome.wrapped_key

    logger.warning("Agreement wrap failed, falling back to RSA-OAEP: %s", outcome.error)
    return WrapAlgorithm.ENCAPSULATION, wrap_with_encapsulation(message_key, peer_encapsulation_public)


def unwrap_message_key(algorithm: WrapAlgorithm, wrapped_key: bytes, salt: bytes,
                       own_agreement_private: Optional[AgreementPrivateKey],
                       peer_agreement_public: Optional[AgreementPublicKey],
                       own_encapsulation_private: Optional[EncapsulationPrivateKey]) -> bytes:
    """
    Unwrap by the recorded tag only; no trial of the other path.

    Raises:
        UnwrapError: If the selected path fails
        EnvelopeFormatError: If the tag is unknown
    """
    algorithm = WrapAlgorithm.parse(algorithm)
    if algorithm is WrapAlgorithm.AGREEMENT:
        return unwrap_with_agreement(wrapped_key, own_agreement_private, peer_agreement_public, salt)
    return unwrap_with_encapsulation(wrapped_key, own_encapsulation_private)
