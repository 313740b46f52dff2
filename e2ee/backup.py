"""
Passphrase-sealed backup of private identity keys.

The bundle of private JWKs is encrypted with AES-256-GCM under a key
derived from the passphrase with PBKDF2-HMAC-SHA256. A wrong passphrase and
a corrupted file fail identically.
"""

import json
from dataclasses import dataclass
from typing import Dict

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .keys import JWK, IdentityKeys
from .primitives import (
    KEY_SIZE,
    BackupRestoreError,
    CryptoError,
    aead_decrypt,
    aead_encrypt,
    b64decode,
    b64encode,
    bytes_to_text,
    generate_nonce,
    generate_salt,
    text_to_bytes,
)

PBKDF2_ITERATIONS = 200_000
MIN_PBKDF2_ITERATIONS = 200_000


def derive_passphrase_key(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive an encryption key from a passphrase using PBKDF2.

    Args:
        passphrase: User's passphrase
        salt: Salt for key derivation
        iterations: PBKDF2 iteration count

    Returns:
        32-byte encryption key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(text_to_bytes(passphrase))


@dataclass
class PrivateKeyBundle:
    """Private agreement and encapsulation keys, as JWKs"""
    agreement_private_jwk: JWK
    encapsulation_private_jwk: JWK

    @classmethod
    def from_identity(cls, keys: IdentityKeys) -> 'PrivateKeyBundle':
        jwks = keys.private_jwks()
        return cls(agreement_private_jwk=jwks['agreement'], encapsulation_private_jwk=jwks['encapsulation'])

    def to_identity(self) -> IdentityKeys:
        return IdentityKeys.from_private_jwks(self.agreement_private_jwk, self.encapsulation_private_jwk)

    def to_json(self) -> str:
        return json.dumps({
            'ecdhPrivateJwk': self.agreement_private_jwk,
            'rsaPrivateJwk': self.encapsulation_private_jwk,
        })

    @classmethod
    def from_json(cls, text: str) -> 'PrivateKeyBundle':
        data = json.loads(text)
        return cls(agreement_private_jwk=data['ecdhPrivateJwk'], encapsulation_private_jwk=data['rsaPrivateJwk'])


@dataclass
class SealedBackup:
    """
    Sealed backup document.

    Attributes:
        ciphertext: AES-GCM ciphertext of the bundle JSON
        nonce: 12-byte nonce
        salt: 16-byte PBKDF2 salt
        iterations: PBKDF2 iterations used when sealing
    """
    ciphertext: bytes
    nonce: bytes
    salt: bytes
    iterations: int = PBKDF2_ITERATIONS

    def to_dict(self) -> Dict:
        return {
            'ciphertext': b64encode(self.ciphertext),
            'iv': b64encode(self.nonce),
            'salt': b64encode(self.salt),
            'iterations': self.iterations,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> 'SealedBackup':
        """
        Parse a backup document.

        Raises:
            BackupRestoreError: If the document is malformed
        """
        try:
            data = json.loads(text)
            return cls(
                ciphertext=b64decode(data['ciphertext']),
                nonce=b64decode(data['iv']),
                salt=b64decode(data['salt']),
                iterations=int(data.get('iterations', PBKDF2_ITERATIONS)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise BackupRestoreError("Invalid passphrase or corrupted backup file") from e


def seal_backup(bundle: PrivateKeyBundle, passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> SealedBackup:
    """
    Seal a private key bundle with a passphrase.

    Args:
        bundle: Private keys to protect
        passphrase: Passphrase the backup will be restored with
        iterations: PBKDF2 iterations, at least MIN_PBKDF2_ITERATIONS

    Returns:
        SealedBackup
    """
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}")

    salt = generate_salt()
    nonce = generate_nonce()
    key = derive_passphrase_key(passphrase, salt, iterations)
    ciphertext = aead_encrypt(key, nonce, text_to_bytes(bundle.to_json()))

    return SealedBackup(ciphertext=ciphertext, nonce=nonce, salt=salt, iterations=iterations)


def unseal_backup(sealed: SealedBackup, passphrase: str) -> PrivateKeyBundle:
    """
    Restore a private key bundle.

    Raises:
        BackupRestoreError: Wrong passphrase or corrupted backup, without
            saying which
    """
    try:
        key = derive_passphrase_key(passphrase, sealed.salt, sealed.iterations)
        plaintext = aead_decrypt(key, sealed.nonce, sealed.ciphertext)
        return PrivateKeyBundle.from_json(bytes_to_text(plaintext))
    except (CryptoError, ValueError, KeyError, TypeError) as e:
        raise BackupRestoreError("Invalid passphrase or corrupted backup file") from e


def export_keys_sealed(keys: IdentityKeys, passphrase: str) -> str:
    """Seal an identity's private keys into a backup file body"""
    return seal_backup(PrivateKeyBundle.from_identity(keys), passphrase).to_json()


def import_keys_sealed(text: str, passphrase: str) -> IdentityKeys:
    """
    Restore an identity from a backup file body.

    Raises:
        BackupRestoreError: If the passphrase is wrong or the file is damaged
    """
    bundle = unseal_backup(SealedBackup.from_json(text), passphrase)
    try:
        return bundle.to_identity()
    except (CryptoError, ValueError, TypeError) as e:
        raise BackupRestoreError("Invalid passphrase or corrupted backup file") from e
