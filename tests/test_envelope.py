import base64
import hashlib

import pytest

from bucket_inbox.core.envelope import (
    DecryptionFailed,
    InvalidKeyError,
    MalformedEnvelopeError,
    decrypt_from,
    encrypt_for,
    generate_message_id,
)
from bucket_inbox.core.keys import derive_keypair
from bucket_inbox.core.models import EncryptedMessage


@pytest.fixture
def recipient():
    return derive_keypair("recipient seed")


def test_roundtrip(recipient):
    for plaintext in (b"", b"hi", "héllo 👋".encode('utf-8'), b"x" * 4096):
        sealed = encrypt_for(recipient.public_key, plaintext)
        assert decrypt_from(recipient.secret_key, sealed) == plaintext


def test_layout(recipient):
    sealed = encrypt_for(recipient.public_key, b"hello")
    assert len(base64.b64decode(sealed.nonce)) == 24
    # ephemeral public key + 16-byte MAC + plaintext
    assert len(base64.b64decode(sealed.ciphertext)) == 32 + 16 + 5


def test_ciphertext_is_not_deterministic(recipient):
    first = encrypt_for(recipient.public_key, b"same")
    second = encrypt_for(recipient.public_key, b"same")
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_wrong_key_fails(recipient):
    sealed = encrypt_for(recipient.public_key, b"secret")
    other = derive_keypair("someone else")
    with pytest.raises(DecryptionFailed):
        decrypt_from(other.secret_key, sealed)


def test_tampered_ciphertext_fails(recipient):
    sealed = encrypt_for(recipient.public_key, b"secret")
    raw = bytearray(base64.b64decode(sealed.ciphertext))
    raw[-1] ^= 0x01
    tampered = EncryptedMessage(nonce=sealed.nonce, ciphertext=base64.b64encode(bytes(raw)).decode())
    with pytest.raises(DecryptionFailed):
        decrypt_from(recipient.secret_key, tampered)


def test_length_validation(recipient):
    sealed = encrypt_for(recipient.public_key, b"secret")

    short_nonce = EncryptedMessage(nonce=base64.b64encode(b"\x00" * 12).decode(), ciphertext=sealed.ciphertext)
    with pytest.raises(MalformedEnvelopeError):
        decrypt_from(recipient.secret_key, short_nonce)

    short_body = EncryptedMessage(nonce=sealed.nonce, ciphertext=base64.b64encode(b"\x00" * 40).decode())
    with pytest.raises(MalformedEnvelopeError):
        decrypt_from(recipient.secret_key, short_body)

    not_base64 = EncryptedMessage(nonce="***", ciphertext=sealed.ciphertext)
    with pytest.raises(MalformedEnvelopeError):
        decrypt_from(recipient.secret_key, not_base64)

    with pytest.raises(InvalidKeyError):
        decrypt_from(recipient.secret_key[:16], sealed)
    with pytest.raises(InvalidKeyError):
        encrypt_for(b"\x00" * 31, b"hi")


def test_message_id_is_pure_and_order_sensitive():
    fields = ("2024-03-05T14:30:00.000Z", "alice", "bob", "bm9uY2U=", "Y2lwaGVy")
    expected = base64.b64encode(hashlib.sha512("|".join(fields).encode()).digest()).decode()
    assert generate_message_id(*fields) == expected
    assert generate_message_id(*fields) == generate_message_id(*fields)

    swapped = (fields[0], fields[2], fields[1], fields[3], fields[4])
    assert generate_message_id(*swapped) != expected
