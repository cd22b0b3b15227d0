"""
LAN Hub - Cryptographic operations.

This module implements the two key layers of the shared channel:
- X25519 identity key pairs, one per peer, used only to wrap room keys
- A symmetric AES-256-GCM room key shared by every peer in the hub
- Key-exchange envelopes: ephemeral X25519 agreement, HKDF-SHA256 and
  AES-256-GCM wrapping of the raw room key for a single recipient
- Argon2id derivation of a room key from a shared passphrase

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import binascii
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    KEY_SIZE,
    NONCE_SIZE,
    PASSPHRASE_SALT,
    ROOM_KEY_ALGORITHM,
    ROOM_KEY_INFO,
    SALT_SIZE,
)
from .errors import CryptoError, ErrorCode
from .models import KeyEnvelope
from .utils import b64decode, b64encode


class IdentityKeyPair:
    """
    A peer's long-term X25519 identity key pair.

    The public half is published through ``register_user`` so that admins
    can wrap the room key for this peer. The private half never leaves the
    local store.
    """

    def __init__(self, private_key: Optional[x25519.X25519PrivateKey] = None):
        if private_key is None:
            self.private_key = x25519.X25519PrivateKey.generate()
        else:
            self.private_key = private_key
        self.public_key = self.private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as raw bytes."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )

    @property
    def public_key_b64(self) -> str:
        return b64encode(self.get_public_key_bytes())

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for storage."""
        return {
            'private': b64encode(self.get_private_key_bytes()),
            'public': self.public_key_b64
        }

    @staticmethod
    def from_dict(data: Dict[str, str]) -> 'IdentityKeyPair':
        """Import key pair from dictionary."""
        try:
            private_bytes = b64decode(data['private'])
            private_key = x25519.X25519PrivateKey.from_private_bytes(private_bytes)
        except (KeyError, ValueError) as e:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid stored identity key: {e}")
        return IdentityKeyPair(private_key)

    @staticmethod
    def load_public_key(public_b64: str) -> x25519.X25519PublicKey:
        """Load a peer's published public key from base64."""
        try:
            return x25519.X25519PublicKey.from_public_bytes(b64decode(public_b64))
        except (ValueError, TypeError) as e:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid public key: {e}")


@dataclass(frozen=True)
class RoomKey:
    """
    The symmetric key protecting message bodies and file chunks.

    ``generation`` is a fingerprint of the key material: two peers holding
    the same key report the same generation, and a rotated key always
    reports a new one.
    """

    raw: bytes
    algorithm: str = ROOM_KEY_ALGORITHM

    def __post_init__(self):
        if len(self.raw) != KEY_SIZE:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Room key must be {KEY_SIZE} bytes",
                {'length': len(self.raw)}
            )

    @property
    def generation(self) -> str:
        return generate_fingerprint(self.raw)[:16]

    def to_dict(self) -> Dict[str, str]:
        return {'key': b64encode(self.raw), 'alg': self.algorithm}

    @staticmethod
    def from_dict(data: Dict[str, str]) -> 'RoomKey':
        try:
            raw = b64decode(data['key'])
        except (KeyError, ValueError) as e:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid stored room key: {e}")
        return RoomKey(raw, data.get('alg', ROOM_KEY_ALGORITHM))


def generate_room_key() -> RoomKey:
    """Generate a fresh random 256-bit room key."""
    return RoomKey(AESGCM.generate_key(bit_length=KEY_SIZE * 8))


def derive_room_key_from_passphrase(passphrase: str) -> RoomKey:
    """
    Derive a room key from a shared passphrase using Argon2id.

    The salt is a fixed application constant so that every peer configured
    with the same passphrase arrives at the same key.

    Parameters:
        - Time cost: 3 iterations
        - Memory cost: 65536 KB (64 MB)
        - Parallelism: 1 thread
        - Output: 32 bytes (256 bits)
    """
    if not passphrase:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, "Passphrase must not be empty")
    raw = hash_secret_raw(
        secret=passphrase.encode('utf-8'),
        salt=PASSPHRASE_SALT,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID
    )
    return RoomKey(raw)


def encrypt_bytes(room_key: RoomKey, data: bytes) -> Tuple[str, str]:
    """
    Encrypt binary data under the room key with a fresh random nonce.

    Returns:
        Tuple of (ciphertext_b64, nonce_b64)
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(room_key.raw).encrypt(nonce, data, None)
    return b64encode(ciphertext), b64encode(nonce)


def decrypt_bytes(room_key: RoomKey, ciphertext_b64: str, nonce_b64: str) -> bytes:
    """
    Decrypt data produced by :func:`encrypt_bytes`.

    Raises:
        CryptoError: If the key is wrong or the data was tampered with
    """
    try:
        nonce = b64decode(nonce_b64)
        ciphertext = b64decode(ciphertext_b64)
        return AESGCM(room_key.raw).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError, binascii.Error) as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Decryption failed",
            {'error': type(e).__name__}
        )


def encrypt_text(room_key: RoomKey, plaintext: str) -> Tuple[str, str]:
    """Encrypt UTF-8 text; returns (ciphertext_b64, nonce_b64)."""
    return encrypt_bytes(room_key, plaintext.encode('utf-8'))


def decrypt_text(room_key: RoomKey, ciphertext_b64: str, nonce_b64: str) -> str:
    data = decrypt_bytes(room_key, ciphertext_b64, nonce_b64)
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise CryptoError(ErrorCode.E102_DECRYPTION_FAILED, f"Decrypted text is not UTF-8: {e}")


def _derive_wrapping_key(shared_secret: bytes, salt: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        info=ROOM_KEY_INFO
    )
    return hkdf.derive(shared_secret)


def wrap_room_key(room_key: RoomKey, recipient_public_b64: str, sender_id: str) -> KeyEnvelope:
    """
    Wrap the room key for a single recipient.

    A fresh ephemeral X25519 key pair is agreed with the recipient's
    identity key; HKDF-SHA256 with a fresh 16-byte salt derives the
    wrapping key, and AES-256-GCM with a fresh 12-byte nonce encrypts the
    raw room key. Every call produces a distinct envelope.

    Raises:
        CryptoError: If the recipient public key is invalid
    """
    recipient_public = IdentityKeyPair.load_public_key(recipient_public_b64)
    ephemeral = x25519.X25519PrivateKey.generate()
    shared_secret = ephemeral.exchange(recipient_public)

    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    wrapping_key = _derive_wrapping_key(shared_secret, salt)
    ciphertext = AESGCM(wrapping_key).encrypt(nonce, room_key.raw, None)

    epk = ephemeral.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return KeyEnvelope(
        sender_id=sender_id,
        epk=b64encode(epk),
        salt=b64encode(salt),
        nonce=b64encode(nonce),
        ciphertext=b64encode(ciphertext)
    )


def unwrap_room_key(identity: IdentityKeyPair, envelope: KeyEnvelope) -> RoomKey:
    """
    Recover the room key from an envelope addressed to ``identity``.

    Raises:
        CryptoError: If the envelope is malformed or not addressed to us
    """
    try:
        epk = x25519.X25519PublicKey.from_public_bytes(b64decode(envelope.epk))
        salt = b64decode(envelope.salt)
        nonce = b64decode(envelope.nonce)
        ciphertext = b64decode(envelope.ciphertext)
        shared_secret = identity.private_key.exchange(epk)
        wrapping_key = _derive_wrapping_key(shared_secret, salt)
        raw = AESGCM(wrapping_key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError, TypeError, AttributeError, binascii.Error) as e:
        raise CryptoError(
            ErrorCode.E105_ENVELOPE_INVALID,
            "Failed to unwrap room key",
            {'from': envelope.sender_id, 'error': type(e).__name__}
        )
    return RoomKey(raw)


def generate_fingerprint(key_bytes: bytes) -> str:
    """
    Generate a hexadecimal SHA-256 fingerprint of key material.

    Used to show identity keys to users for out-of-band comparison, and
    to name room key generations.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(key_bytes)
    return digest.finalize().hex()
