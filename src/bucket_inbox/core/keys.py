"""
Key Derivation for Bucket Inbox

This module derives everything a session needs from the user's secret:
the X25519 keypair used for sealed-box encryption, the opaque storage
credential identifier, and the SS58 address that names the user's inbox
and profile containers.
"""

from typing import Optional, Tuple, NamedTuple, Dict
import base64
import hashlib
import unicodedata

import base58
import sr25519
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from mnemonic import Mnemonic
from nacl.public import PrivateKey

SS58_CONTEXT = b"SS58PRE"
DEFAULT_SS58_PREFIX = 42
PBKDF2_ITERATIONS = 2048


class KeyDerivationError(Exception):
    """Base exception for key derivation"""
    pass


class InvalidMnemonic(KeyDerivationError):
    """Mnemonic does not validate against the wordlist"""
    pass


class InvalidSeed(KeyDerivationError):
    """Seed material is empty or of the wrong length"""
    pass


class InvalidAddress(KeyDerivationError):
    """SS58 address cannot be decoded or fails its checksum"""
    pass


class DerivedAddress(NamedTuple):
    address: str
    public_key_hex: str


def _blake2b_512(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.BLAKE2b(64))
    digest.update(data)
    return digest.finalize()


def _prefix_bytes(prefix: int) -> bytes:
    if 0 <= prefix < 64:
        return bytes([prefix])
    if 64 <= prefix < 16384:
        first = ((prefix & 0b0000_0000_1111_1100) >> 2) | 0b0100_0000
        second = (prefix >> 8) | ((prefix & 0b0000_0000_0000_0011) << 6)
        return bytes([first, second])
    raise ValueError(f"SS58 prefix out of range: {prefix}")


def ss58_encode(public_key: bytes, prefix: int = DEFAULT_SS58_PREFIX) -> str:
    """Encode a 32-byte public key as a checksummed SS58 address"""
    if len(public_key) != 32:
        raise InvalidSeed("Public key must be 32 bytes")
    payload = _prefix_bytes(prefix) + bytes(public_key)
    checksum = _blake2b_512(SS58_CONTEXT + payload)[:2]
    return base58.b58encode(payload + checksum).decode('ascii')


def ss58_decode(address: str) -> Tuple[int, bytes]:
    """Decode an SS58 address into ``(prefix, public_key)``, verifying the checksum"""
    try:
        data = base58.b58decode(address.strip())
    except ValueError as e:
        raise InvalidAddress(f"Not base58: {address!r}") from e

    if not data:
        raise InvalidAddress("Empty address")
    if data[0] & 0b0100_0000:
        prefix_len = 2
        lower = ((data[0] & 0b0011_1111) << 2) | (data[1] >> 6) if len(data) > 1 else 0
        upper = data[1] & 0b0011_1111 if len(data) > 1 else 0
        prefix = lower | (upper << 8)
    else:
        prefix_len = 1
        prefix = data[0]

    if len(data) != prefix_len + 32 + 2:
        raise InvalidAddress(f"Unexpected address length: {len(data)} bytes")

    payload, checksum = data[:-2], data[-2:]
    if _blake2b_512(SS58_CONTEXT + payload)[:2] != checksum:
        raise InvalidAddress("Address checksum mismatch")
    return prefix, payload[prefix_len:]


def is_valid_address(address: str) -> bool:
    try:
        ss58_decode(address)
        return True
    except InvalidAddress:
        return False


def _mini_secret_from_mnemonic(mnemonic: str, password: str = "") -> bytes:
    """PBKDF2-HMAC-SHA512 over the mnemonic entropy, truncated to 32 bytes"""
    phrase = unicodedata.normalize("NFKD", " ".join(mnemonic.split()))
    wordlist = Mnemonic("english")
    if not phrase or not wordlist.check(phrase):
        raise InvalidMnemonic("Mnemonic does not validate against the english wordlist")

    entropy = bytes(wordlist.to_entropy(phrase))
    salt = ("mnemonic" + unicodedata.normalize("NFKD", password)).encode('utf-8')
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=64,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(entropy)[:32]


def derive_address_from_mnemonic(mnemonic: str, password: str = "",
                                 ss58_prefix: int = DEFAULT_SS58_PREFIX) -> DerivedAddress:
    """
    Derive the sr25519 account address for a BIP-39 mnemonic.

    The mini-secret is expanded into an sr25519 keypair and its public key
    is SS58 encoded, matching the address any Substrate wallet shows for
    the same phrase.
    """
    mini_secret = _mini_secret_from_mnemonic(mnemonic, password)
    public_key, _secret = sr25519.pair_from_seed(mini_secret)
    return DerivedAddress(
        address=ss58_encode(bytes(public_key), ss58_prefix),
        public_key_hex=bytes(public_key).hex(),
    )


class KeyPair:
    """Session keypair; held in memory only and never written to storage"""

    def __init__(self, seed: str, secret_key: bytes, public_key: bytes, address: str):
        if len(secret_key) != 32 or len(public_key) != 32:
            raise InvalidSeed("Keypair components must be 32 bytes")
        self.seed = seed
        self.secret_key = bytes(secret_key)
        self.public_key = bytes(public_key)
        self.address = address.strip()

    @property
    def access_key_id(self) -> str:
        """Opaque storage credential identifier derived from the seed"""
        return base64.b64encode(self.seed.encode('utf-8')).decode('utf-8')

    def public_key_hex(self) -> str:
        return self.public_key.hex()

    def storage_credentials(self) -> Dict[str, str]:
        """Credentials for the object-store gateway, which authenticates with the seed"""
        return {
            'access_key_id': self.access_key_id,
            'secret_access_key': self.seed,
        }

    def __repr__(self) -> str:
        return f"KeyPair(address={self.address!r}, public_key={self.public_key_hex()[:16]}...)"


def derive_keypair(seed: str, address: Optional[str] = None,
                   ss58_prefix: int = DEFAULT_SS58_PREFIX) -> KeyPair:
    """
    Derive the session keypair from a seed string.

    SHA-512 of the seed is computed and its first 32 bytes become the X25519
    secret key. When no address is supplied it is derived from the seed:
    a valid mnemonic yields its sr25519 account address, any other seed
    yields the SS58 encoding of the X25519 public key.
    """
    if not seed or not seed.strip():
        raise InvalidSeed("Seed must not be empty")

    digest = hashlib.sha512(seed.encode('utf-8')).digest()
    private_key = PrivateKey(digest[:32])
    public_key = bytes(private_key.public_key)

    if address is None:
        try:
            address = derive_address_from_mnemonic(seed, ss58_prefix=ss58_prefix).address
        except InvalidMnemonic:
            address = ss58_encode(public_key, ss58_prefix)

    return KeyPair(
        seed=seed,
        secret_key=bytes(private_key),
        public_key=public_key,
        address=address,
    )
