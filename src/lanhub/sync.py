"""
LAN Hub - Synchronizer.

Keeps the local view of presence, messages, rooms and devices consistent
with the relay. A fixed-interval heartbeat carries the message cursor; the
relay answers with the current presence snapshot, every message past the
cursor, queued key envelopes, rooms and devices. Transfer announcements
are left to the transfer engine, which lists them on its own schedule.

Message merging is idempotent: messages are keyed by id (the incoming copy
wins) and ordered by relay sequence number, then by timestamp.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .constants import POLL_INTERVAL, ROOM_KEY_ALGORITHM, STORE_DEVICES, STORE_MESSAGES, STORE_ROOMS
from .crypto import RoomKey, decrypt_text, encrypt_text
from .errors import CryptoError, LanHubError, ProtocolError, TransportError
from .models import Device, KeyEnvelope, Message, MessageKind, PeerIdentity, Room
from .protocol import RequestType
from .rooms import can_write
from .utils import generate_id, now_ms

logger = logging.getLogger(__name__)


class SyncEvent(str, Enum):
    """Change notifications delivered to listeners."""

    MESSAGES = "messages"
    PRESENCE = "presence"
    ROOMS = "rooms"
    DEVICES = "devices"
    KEY = "key"
    TRANSFERS = "transfers"


def _parse_all(items: Any, factory: Callable[[Dict[str, Any]], Any], what: str) -> List[Any]:
    parsed = []
    if not isinstance(items, list):
        return parsed
    for item in items:
        try:
            parsed.append(factory(item))
        except (KeyError, TypeError, ValueError, ProtocolError) as e:
            logger.debug(f"Skipping malformed {what}: {e}")
    return parsed


@dataclass
class PollResult:
    """Decoded heartbeat response."""

    presence: List[PeerIdentity]
    new_messages: List[Message]
    key_envelopes: List[KeyEnvelope]
    rooms: Optional[List[Room]]
    devices: Optional[List[Device]]
    next_cursor: int

    @staticmethod
    def from_response(response: Dict[str, Any], cursor: int) -> "PollResult":
        next_cursor = response.get("lastSeq")
        if isinstance(next_cursor, bool) or not isinstance(next_cursor, int):
            next_cursor = cursor

        rooms = response.get("rooms")
        devices = response.get("devices")
        return PollResult(
            presence=_parse_all(response.get("onlineUsers"), PeerIdentity.from_dict, "user"),
            new_messages=_parse_all(response.get("newMessages"), Message.from_dict, "message"),
            key_envelopes=_parse_all(response.get("keyUpdates"), KeyEnvelope.from_dict, "key envelope"),
            rooms=_parse_all(rooms, Room.from_dict, "room") if isinstance(rooms, list) else None,
            devices=_parse_all(devices, Device.from_dict, "device") if isinstance(devices, list) else None,
            next_cursor=next_cursor,
        )


def merge_messages(existing: Iterable[Message], incoming: Iterable[Message]) -> List[Message]:
    """
    Merge two message collections.

    Deduplicates by id with the incoming copy winning, then orders by
    sequence number (absent counts as 0) and timestamp. A decrypted view
    held locally survives when the incoming copy carries the same
    ciphertext but no view of its own.
    """
    by_id: Dict[str, Message] = {m.id: m for m in existing}
    for message in incoming:
        prior = by_id.get(message.id)
        if (
            prior is not None
            and message.plaintext is None
            and prior.plaintext is not None
            and prior.content == message.content
        ):
            message = message.with_plaintext(prior.plaintext)
        by_id[message.id] = message
    return sorted(by_id.values(), key=lambda m: (m.seq or 0, m.timestamp))


class Synchronizer:
    """
    Polling synchronizer for one peer.

    Attributes:
        user: The local peer's identity
        cursor: Highest relay sequence number observed
        messages: Merged local message list
        presence: Last presence snapshot
        rooms: Room roster keyed by id
        devices: Last device snapshot
    """

    def __init__(
        self,
        transport,
        store,
        user: PeerIdentity,
        poll_interval: float = POLL_INTERVAL,
        key_provider: Optional[Callable[[], Optional[RoomKey]]] = None,
    ):
        self.transport = transport
        self.store = store
        self.user = user
        self.poll_interval = poll_interval
        self.key_provider = key_provider or (lambda: None)

        self.cursor = 0
        self.presence: List[PeerIdentity] = []
        self.messages: List[Message] = merge_messages(
            [], _parse_all(store.get(STORE_MESSAGES, []), Message.from_dict, "stored message")
        )
        self.rooms: Dict[str, Room] = {
            r.id: r for r in _parse_all(store.get(STORE_ROOMS, []), Room.from_dict, "stored room")
        }
        self.devices: List[Device] = _parse_all(store.get(STORE_DEVICES, []), Device.from_dict, "stored device")

        self._listeners: List[Callable] = []
        self._poll_handlers: List[Callable] = []
        self.running = False

    # Listeners

    def add_listener(self, callback: Callable) -> None:
        """Register ``callback(event, data)``; coroutine functions are awaited."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def add_poll_handler(self, handler: Callable) -> None:
        """Register a coroutine ``handler(result)`` run after every successful poll."""
        self._poll_handlers.append(handler)

    async def notify(self, event: SyncEvent, data: Any = None) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener failed on {event.value}: {e}", exc_info=True)

    # Local view

    def get_peer(self, peer_id: str) -> Optional[PeerIdentity]:
        for peer in self.presence:
            if peer.id == peer_id:
                return peer
        return None

    def messages_for(self, room_id: Optional[str]) -> List[Message]:
        """Messages of one channel; ``None`` selects the global channel."""
        return [m for m in self.messages if m.room_id == room_id]

    async def _decrypt(self, message: Message, room_key: Optional[RoomKey]) -> Message:
        if not message.needs_decryption or room_key is None:
            return message
        try:
            plaintext = await asyncio.to_thread(decrypt_text, room_key, message.content, message.nonce)
        except CryptoError as e:
            logger.debug(f"Message {message.id} stays encrypted: {e.message}")
            return message
        return message.with_plaintext(plaintext)

    async def _save_messages(self) -> None:
        await self.store.set(STORE_MESSAGES, [m.to_dict(include_view=True) for m in self.messages])

    async def ingest_messages(self, incoming: Iterable[Message]) -> List[Message]:
        """
        Decrypt, merge, persist and announce incoming messages.

        Returns:
            Messages whose id was not held before
        """
        room_key = self.key_provider()
        known = {m.id for m in self.messages}
        decrypted = [await self._decrypt(m, room_key) for m in incoming]
        if not decrypted:
            return []

        self.messages = merge_messages(self.messages, decrypted)
        await self._save_messages()

        added = [m for m in decrypted if m.id not in known]
        if added:
            await self.notify(SyncEvent.MESSAGES, added)
        return added

    async def redecrypt_messages(self) -> int:
        """
        Retry decryption of every held message still marked encrypted.

        Ids and sequence numbers are untouched; failures stay opaque.

        Returns:
            Number of messages newly decrypted
        """
        room_key = self.key_provider()
        if room_key is None:
            return 0

        updated = []
        recovered = 0
        for message in self.messages:
            result = await self._decrypt(message, room_key)
            if result is not message:
                recovered += 1
            updated.append(result)

        if recovered:
            self.messages = updated
            await self._save_messages()
            await self.notify(SyncEvent.MESSAGES, [])
            logger.info(f"Decrypted {recovered} held messages with the new room key")
        return recovered

    async def replace_presence(self, presence: List[PeerIdentity]) -> None:
        self.presence = presence
        await self.notify(SyncEvent.PRESENCE, presence)

    async def replace_rooms(self, rooms: Iterable[Room]) -> None:
        self.rooms = {r.id: r for r in rooms}
        await self.store.set(STORE_ROOMS, [r.to_dict() for r in self.rooms.values()])
        await self.notify(SyncEvent.ROOMS, list(self.rooms.values()))

    async def upsert_room(self, room: Room) -> None:
        self.rooms[room.id] = room
        await self.store.set(STORE_ROOMS, [r.to_dict() for r in self.rooms.values()])
        await self.notify(SyncEvent.ROOMS, list(self.rooms.values()))

    async def replace_devices(self, devices: List[Device]) -> None:
        self.devices = devices
        await self.store.set(STORE_DEVICES, [d.to_dict() for d in devices])
        await self.notify(SyncEvent.DEVICES, devices)

    # Relay operations

    async def poll(self) -> PollResult:
        """
        One heartbeat round trip.

        Raises:
            TransportError: If the relay cannot be reached or rejects the call
        """
        response = await self.transport.request(
            RequestType.HEARTBEAT, {"userId": self.user.id, "lastSeq": self.cursor}
        )
        result = PollResult.from_response(response, self.cursor)

        await self.replace_presence(result.presence)
        await self.ingest_messages(result.new_messages)
        if result.rooms is not None:
            await self.replace_rooms(result.rooms)
        if result.devices is not None:
            await self.replace_devices(result.devices)
        self.cursor = result.next_cursor

        for handler in list(self._poll_handlers):
            await handler(result)
        return result

    async def tick(self) -> Optional[PollResult]:
        """Poll once; a failure is logged and left to the next tick."""
        try:
            return await self.poll()
        except TransportError as e:
            logger.warning(f"Sync poll failed: {e.message}")
            return None
        except LanHubError as e:
            logger.error(f"Sync cycle failed: {e}", exc_info=True)
            return None
        except Exception as e:
            logger.error(f"Unexpected error in sync cycle: {e}", exc_info=True)
            return None

    async def run(self) -> None:
        """Poll eagerly, then on a fixed interval until stopped."""
        self.running = True
        await self.tick()
        while self.running:
            await asyncio.sleep(self.poll_interval)
            if self.running:
                await self.tick()

    def stop(self) -> None:
        self.running = False

    async def bootstrap(self) -> bool:
        """Rebuild presence, history, cursor, devices and rooms from ``get_state``."""
        try:
            response = await self.transport.request(RequestType.GET_STATE)
        except TransportError as e:
            logger.warning(f"Initial state fetch failed: {e.message}")
            return False

        await self.replace_presence(_parse_all(response.get("onlineUsers"), PeerIdentity.from_dict, "user"))
        await self.ingest_messages(_parse_all(response.get("messages"), Message.from_dict, "message"))
        if isinstance(response.get("rooms"), list):
            await self.replace_rooms(_parse_all(response["rooms"], Room.from_dict, "room"))
        if isinstance(response.get("devices"), list):
            await self.replace_devices(_parse_all(response["devices"], Device.from_dict, "device"))

        last_seq = response.get("lastSeq")
        if isinstance(last_seq, int) and not isinstance(last_seq, bool):
            self.cursor = last_seq
        return True

    async def register(self) -> bool:
        """Announce the local user, including its identity public key."""
        try:
            response = await self.transport.request(RequestType.REGISTER_USER, self.user.to_dict())
        except TransportError as e:
            logger.warning(f"Registration with relay failed: {e.message}")
            return False

        await self.replace_presence(_parse_all(response.get("onlineUsers"), PeerIdentity.from_dict, "user"))
        await self.ingest_messages(_parse_all(response.get("messages"), Message.from_dict, "message"))
        logger.info(f"Registered {self.user.username} with relay")
        return True

    async def unregister(self) -> bool:
        try:
            await self.transport.request(RequestType.UNREGISTER_USER, {"userId": self.user.id})
        except TransportError as e:
            logger.warning(f"Unregister failed: {e.message}")
            return False
        return True

    async def register_device(self, device: Device) -> bool:
        try:
            response = await self.transport.request(RequestType.REGISTER_DEVICE, device.to_dict())
        except TransportError as e:
            logger.warning(f"Device registration failed: {e.message}")
            return False

        if isinstance(response.get("devices"), list):
            await self.replace_devices(_parse_all(response["devices"], Device.from_dict, "device"))
        return True

    async def send_message(
        self,
        content: str,
        room_id: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
    ) -> bool:
        """
        Send a message to the global channel or a room.

        The write gate runs first: a refused send makes no relay call and
        leaves the local list untouched. Otherwise the body is encrypted
        under the active room key when there is one, the plaintext view is
        stored locally, and the message is handed to the relay.

        Returns:
            True if the relay accepted the message
        """
        if not content:
            return False

        room = None
        if room_id is not None:
            room = self.rooms.get(room_id)
            if room is None:
                logger.warning(f"Cannot send to unknown room {room_id}")
                return False
        if not can_write(room, self.user):
            logger.warning(
                "Only admins can post to the global channel"
                if room is None
                else f"Not a participant of room {room_id}"
            )
            return False

        room_key = self.key_provider()
        fields: Dict[str, Any] = {}
        if room_key is not None:
            try:
                ciphertext, nonce = await asyncio.to_thread(encrypt_text, room_key, content)
            except CryptoError as e:
                logger.error(f"Encryption failed, message not sent: {e.message}")
                return False
            fields = {"content": ciphertext, "enc": True, "nonce": nonce, "alg": ROOM_KEY_ALGORITHM}
        else:
            fields = {"content": content}

        message = Message(
            id=generate_id(),
            sender_id=self.user.id,
            sender_name=self.user.display_name,
            timestamp=now_ms(),
            room_id=room_id,
            kind=kind,
            plaintext=content if room_key is not None else None,
            **fields,
        )

        self.messages = merge_messages(self.messages, [message])
        await self._save_messages()
        await self.notify(SyncEvent.MESSAGES, [message])

        try:
            response = await self.transport.request(RequestType.SEND_MESSAGE, message.to_dict())
        except TransportError as e:
            logger.warning(f"Message {message.id} not delivered to relay: {e.message}")
            return False

        echoed = response.get("message")
        if isinstance(echoed, dict):
            try:
                await self.ingest_messages([Message.from_dict(echoed)])
            except (KeyError, TypeError, ValueError, ProtocolError) as e:
                logger.debug(f"Ignoring malformed relay echo: {e}")
        return True
