"""
LAN Hub - Room key exchange.

Owns the peer's identity key pair and the active room key. Admins hand the
room key to every online peer through single-use envelopes relayed by
``key_update``; every peer unwraps the envelopes that arrive with its
heartbeat and adopts the key immediately.

A send ledger keyed by (key generation, peer id) keeps each peer from
receiving the same key twice. Rotating the key starts a new generation, so
every peer is served again.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Set, Tuple

from .constants import STORE_IDENTITY_KEYS, STORE_ROOM_KEY
from .crypto import (
    IdentityKeyPair,
    RoomKey,
    derive_room_key_from_passphrase,
    generate_fingerprint,
    generate_room_key,
    unwrap_room_key,
    wrap_room_key,
)
from .errors import CryptoError, TransportError
from .models import KeyEnvelope, PeerIdentity
from .protocol import RequestType
from .sync import SyncEvent

logger = logging.getLogger(__name__)


class KeyExchangeEngine:
    """
    Identity and room key management for one peer.

    Attributes:
        identity: The peer's X25519 identity key pair
        room_key: The active room key, if any
        ledger: (key generation, peer id) pairs already served
    """

    def __init__(self, sync, store, passphrase: str = ""):
        self.sync = sync
        self.store = store
        self.passphrase = passphrase
        self.identity: Optional[IdentityKeyPair] = None
        self.room_key: Optional[RoomKey] = None
        self.ledger: Set[Tuple[str, str]] = set()

        sync.key_provider = self.get_room_key
        sync.add_poll_handler(self.handle_poll)

    @property
    def user(self) -> PeerIdentity:
        return self.sync.user

    def get_room_key(self) -> Optional[RoomKey]:
        return self.room_key

    @property
    def fingerprint(self) -> str:
        """Fingerprint of the identity public key for out-of-band checks."""
        if self.identity is None:
            return ""
        return generate_fingerprint(self.identity.get_public_key_bytes())

    async def initialize(self) -> None:
        """Load or create the identity, reload the room key, then obtain one if possible."""
        await self.load_or_create_identity()

        stored = self.store.get(STORE_ROOM_KEY)
        if stored:
            try:
                self.room_key = RoomKey.from_dict(stored)
                logger.info(f"Loaded room key generation {self.room_key.generation}")
            except CryptoError as e:
                logger.warning(f"Discarding unreadable stored room key: {e.message}")

        await self.ensure_room_key()

    async def load_or_create_identity(self) -> IdentityKeyPair:
        stored = self.store.get(STORE_IDENTITY_KEYS)
        if stored:
            try:
                self.identity = IdentityKeyPair.from_dict(stored)
            except CryptoError as e:
                logger.warning(f"Stored identity key unreadable, generating a new one: {e.message}")

        if self.identity is None:
            self.identity = IdentityKeyPair()
            await self.store.set(STORE_IDENTITY_KEYS, self.identity.to_dict())
            logger.info("Generated new identity key pair")

        self.user.public_key = self.identity.public_key_b64
        return self.identity

    async def ensure_room_key(self) -> Optional[RoomKey]:
        """
        Make sure a room key is active when one can be obtained locally.

        An admin without a key generates one; anyone else falls back to the
        configured passphrase. Otherwise the peer waits for an envelope.
        """
        if self.room_key is not None:
            return self.room_key

        if self.user.is_admin:
            await self.adopt_room_key(generate_room_key(), "generated")
        elif self.passphrase:
            try:
                key = await asyncio.to_thread(derive_room_key_from_passphrase, self.passphrase)
            except CryptoError as e:
                logger.warning(f"Cannot derive room key from passphrase: {e.message}")
                return None
            await self.adopt_room_key(key, "passphrase")

        return self.room_key

    async def adopt_room_key(self, room_key: RoomKey, source: str) -> bool:
        """
        Make ``room_key`` the active key, superseding any previous one.

        Held messages that are still encrypted are retried with the new key.

        Returns:
            False if the key was already active
        """
        if self.room_key is not None and self.room_key.generation == room_key.generation:
            return False

        self.room_key = room_key
        await self.store.set(STORE_ROOM_KEY, room_key.to_dict())
        logger.info(f"Adopted room key generation {room_key.generation} ({source})")

        await self.sync.redecrypt_messages()
        await self.sync.notify(SyncEvent.KEY, room_key.generation)
        return True

    async def rotate_room_key(self) -> Optional[RoomKey]:
        """Generate a fresh room key (admins only); distribution restarts for every peer."""
        if not self.user.is_admin:
            logger.warning("Only admins can rotate the room key")
            return None
        room_key = generate_room_key()
        await self.adopt_room_key(room_key, "rotated")
        return room_key

    async def consume_envelopes(self, envelopes: Iterable[KeyEnvelope]) -> int:
        """
        Unwrap envelopes addressed to this peer.

        A failed envelope is dropped; it is never retried.

        Returns:
            Number of envelopes that yielded a key
        """
        if self.identity is None:
            await self.load_or_create_identity()

        adopted = 0
        for envelope in envelopes:
            try:
                room_key = await asyncio.to_thread(unwrap_room_key, self.identity, envelope)
            except CryptoError as e:
                logger.warning(f"Dropping key envelope from {envelope.sender_id}: {e.message}")
                continue
            await self.adopt_room_key(room_key, f"envelope from {envelope.sender_id}")
            adopted += 1
        return adopted

    async def distribute(self, presence: List[PeerIdentity]) -> int:
        """
        Send the active room key to every online peer not yet served.

        Only admins distribute. Peers without a published identity key are
        skipped until they publish one. A failed send is not recorded, so
        the peer is retried with the next roster.

        Returns:
            Number of envelopes delivered to the relay
        """
        if not self.user.is_admin or self.room_key is None:
            return 0

        room_key = self.room_key
        generation = room_key.generation
        sent = 0
        for peer in presence:
            if peer.id == self.user.id:
                continue
            if (generation, peer.id) in self.ledger:
                continue
            if not peer.public_key:
                continue

            try:
                envelope = await asyncio.to_thread(wrap_room_key, room_key, peer.public_key, self.user.id)
            except CryptoError as e:
                logger.warning(f"Cannot wrap room key for {peer.id}: {e.message}")
                continue

            try:
                await self.sync.transport.request(
                    RequestType.KEY_UPDATE,
                    {"targetUserId": peer.id, **envelope.to_dict()},
                )
            except TransportError as e:
                logger.warning(f"Key delivery to {peer.id} failed: {e.message}")
                continue

            self.ledger.add((generation, peer.id))
            sent += 1
            logger.debug(f"Sent room key generation {generation} to {peer.id}")

        return sent

    async def handle_poll(self, result) -> None:
        """Consume the envelopes of a poll, then serve its roster."""
        if result.key_envelopes:
            await self.consume_envelopes(result.key_envelopes)
        await self.distribute(result.presence)
