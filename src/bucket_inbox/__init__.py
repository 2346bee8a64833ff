"""
Bucket Inbox

End-to-end encrypted 1:1 messaging on top of nothing but an S3-compatible
object store. Every user owns an inbox made of hourly, append-only log
segments; senders append sealed message lines to the recipient's inbox and
a self-copy to their own, and readers follow their inbox by polling.

Key Features:
- Serverless: containers, objects and metadata are the only infrastructure
- Sealed-box encryption with a fresh ephemeral key per message
- Content-addressed message ids for deduplication
- SS58 addresses derived from BIP-39 mnemonics
- Local filesystem backend for development, S3 backend for deployment
- Rich terminal client

Usage:
    from bucket_inbox import BucketInboxClient

    client = BucketInboxClient()
    await client.login("my seed phrase")
    await client.send_message(contact_address, "Hello!")
"""

__version__ = "0.1.0"
__author__ = "Bucket Inbox Contributors"
__license__ = "AGPLv3"

from .core import (
    DecryptedMessage,
    KeyPair,
    Message,
    MessageKinds,
    ObjectLogStore,
    ProfileStore,
    UserProfile,
    derive_address_from_mnemonic,
    derive_keypair,
)
from .client import BucketInboxClient, MessageSyncService, SyncContext
from .auth import SeedVault
from .config import Settings, get_settings

__all__ = [
    'DecryptedMessage',
    'KeyPair',
    'Message',
    'MessageKinds',
    'ObjectLogStore',
    'ProfileStore',
    'UserProfile',
    'derive_address_from_mnemonic',
    'derive_keypair',
    'BucketInboxClient',
    'MessageSyncService',
    'SyncContext',
    'SeedVault',
    'Settings',
    'get_settings',
]
