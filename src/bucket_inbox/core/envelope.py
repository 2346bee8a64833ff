"""
Sealed Envelopes for Bucket Inbox

Every message body is sealed for exactly one recipient with a fresh
ephemeral X25519 keypair and a random 24-byte nonce (NaCl box). The
ephemeral public key travels in front of the box ciphertext, so the
recipient only needs their own secret key to open it.

Message ids are content addressed: the same five header fields always hash
to the same id, which is what deduplication relies on.
"""

import base64
import binascii
import hashlib

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as nacl_random

from .models import EncryptedMessage

KEY_SIZE = 32
NONCE_SIZE = Box.NONCE_SIZE
MAC_SIZE = 16


class EnvelopeError(Exception):
    """Base exception for envelope operations"""
    pass


class InvalidKeyError(EnvelopeError):
    """Key material of the wrong length"""
    pass


class MalformedEnvelopeError(EnvelopeError):
    """Payload that cannot be decoded or is too short to be a sealed box"""
    pass


class DecryptionFailed(EnvelopeError):
    """Box authentication failed: tampered payload or wrong key"""
    pass


def _require_key(key: bytes, name: str) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        length = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise InvalidKeyError(f"{name} must be {KEY_SIZE} bytes, got {length}")
    return bytes(key)


def _b64decode(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedEnvelopeError(f"{name} is not valid base64") from e


def encrypt_for(recipient_public_key: bytes, plaintext: bytes) -> EncryptedMessage:
    """Seal ``plaintext`` for the holder of ``recipient_public_key``"""
    recipient = PublicKey(_require_key(recipient_public_key, "recipient_public_key"))
    if not isinstance(plaintext, (bytes, bytearray)):
        raise TypeError("plaintext must be bytes")

    ephemeral = PrivateKey.generate()
    nonce = nacl_random(NONCE_SIZE)
    sealed = Box(ephemeral, recipient).encrypt(bytes(plaintext), nonce)
    combined = bytes(ephemeral.public_key) + sealed.ciphertext

    return EncryptedMessage(
        nonce=base64.b64encode(nonce).decode('utf-8'),
        ciphertext=base64.b64encode(combined).decode('utf-8'),
    )


def decrypt_from(our_secret_key: bytes, encrypted: EncryptedMessage) -> bytes:
    """
    Open a sealed payload with our secret key.

    The embedded ephemeral public key is the only sender binding; the box
    MAC authenticates the payload against it.
    """
    secret = PrivateKey(_require_key(our_secret_key, "our_secret_key"))
    nonce = _b64decode(encrypted.nonce, "nonce")
    combined = _b64decode(encrypted.ciphertext, "ciphertext")

    if len(nonce) != NONCE_SIZE:
        raise MalformedEnvelopeError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    if len(combined) < KEY_SIZE + MAC_SIZE:
        raise MalformedEnvelopeError(f"ciphertext too short: {len(combined)} bytes")

    try:
        box = Box(secret, PublicKey(combined[:KEY_SIZE]))
        return box.decrypt(combined[KEY_SIZE:], nonce)
    except CryptoError as e:
        raise DecryptionFailed("Decryption failed - invalid ciphertext or keys") from e


def generate_message_id(ts: str, sender: str, recipient: str, nonce: str, ciphertext: str) -> str:
    """Base64 SHA-512 of ``ts|from|to|nonce|ciphertext``"""
    data = f"{ts}|{sender}|{recipient}|{nonce}|{ciphertext}"
    digest = hashlib.sha512(data.encode('utf-8')).digest()
    return base64.b64encode(digest).decode('utf-8')
