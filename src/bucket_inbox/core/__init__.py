"""
Bucket Inbox Core Module

This module contains the core protocol implementation including:
- Key and address derivation (X25519, sr25519, SS58)
- Sealed-box envelopes and content-addressed message ids
- Object-store interface and backends
- Hour-segmented append-only inbox logs
- Versioned profile storage
"""

from .models import (
    DecryptedMessage,
    EncryptedMessage,
    MalformedLineError,
    Message,
    MessageKinds,
    UserProfile,
)
from .keys import (
    KeyPair,
    KeyDerivationError,
    InvalidMnemonic,
    InvalidSeed,
    InvalidAddress,
    derive_keypair,
    derive_address_from_mnemonic,
    ss58_encode,
    ss58_decode,
)
from .envelope import (
    EnvelopeError,
    InvalidKeyError,
    MalformedEnvelopeError,
    DecryptionFailed,
    encrypt_for,
    decrypt_from,
    generate_message_id,
)
from .storage import (
    ObjectStore,
    LocalObjectStore,
    S3ObjectStore,
    StorageError,
    ObjectNotFoundError,
    AccessDeniedError,
    TransientStorageError,
    ensure_container,
    open_object_store,
    with_retries,
)
from .log import ObjectLogStore, LogBatch, segment_key_for
from .profiles import ProfileStore

__all__ = [
    'DecryptedMessage',
    'EncryptedMessage',
    'MalformedLineError',
    'Message',
    'MessageKinds',
    'UserProfile',
    'KeyPair',
    'KeyDerivationError',
    'InvalidMnemonic',
    'InvalidSeed',
    'InvalidAddress',
    'derive_keypair',
    'derive_address_from_mnemonic',
    'ss58_encode',
    'ss58_decode',
    'EnvelopeError',
    'InvalidKeyError',
    'MalformedEnvelopeError',
    'DecryptionFailed',
    'encrypt_for',
    'decrypt_from',
    'generate_message_id',
    'ObjectStore',
    'LocalObjectStore',
    'S3ObjectStore',
    'StorageError',
    'ObjectNotFoundError',
    'AccessDeniedError',
    'TransientStorageError',
    'ensure_container',
    'open_object_store',
    'with_retries',
    'ObjectLogStore',
    'LogBatch',
    'segment_key_for',
    'ProfileStore',
]
