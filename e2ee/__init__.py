"""
Cryptographic envelope layer for end-to-end encrypted chat.

Implements hybrid envelope encryption with:
- ECDH P-256 + HKDF key-encryption keys, with RSA-OAEP fallback wrapping
- AES-256-GCM message and file payloads with integrity hashes
- Passphrase-sealed backups of private identity keys
"""

from .primitives import (
    CryptoError,
    EntropyError,
    KeyFormatError,
    EnvelopeFormatError,
    UnwrapError,
    DecryptionError,
    IntegrityError,
    BackupRestoreError,
)
from .keys import (
    IdentityKeys,
    PublicIdentity,
    generate_identity_keys,
    fingerprint,
)
from .wrap import WrapAlgorithm
from .envelope import (
    Envelope,
    FileEnvelope,
    InlinePayload,
    ReferencedPayload,
    seal_message,
    open_message,
    seal_file,
    open_file,
)
from .backup import (
    seal_backup,
    unseal_backup,
    export_keys_sealed,
    import_keys_sealed,
)

__all__ = [
    'CryptoError',
    'EntropyError',
    'KeyFormatError',
    'EnvelopeFormatError',
    'UnwrapError',
    'DecryptionError',
    'IntegrityError',
    'BackupRestoreError',
    'IdentityKeys',
    'PublicIdentity',
    'generate_identity_keys',
    'fingerprint',
    'WrapAlgorithm',
    'Envelope',
    'FileEnvelope',
    'InlinePayload',
    'ReferencedPayload',
    'seal_message',
    'open_message',
    'seal_file',
    'open_file',
    'seal_backup',
    'unseal_backup',
    'export_keys_sealed',
    'import_keys_sealed',
]
