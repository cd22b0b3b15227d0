"""
LAN Hub - Domain records.

Peers, devices, rooms, messages, transfers and key envelopes as they travel
between peers and the relay. Every record converts to and from the relay's
camelCase wire dictionaries through ``to_dict`` / ``from_dict``.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from .constants import ENCRYPTED_PLACEHOLDER
from .errors import ErrorCode, ProtocolError
from .utils import now_ms


class Broadcast:
    """Audience with no restriction: every peer may receive."""

    is_broadcast = True

    def includes(self, peer_id: str) -> bool:
        return True

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Broadcast)

    def __hash__(self) -> int:
        return hash("broadcast")

    def __repr__(self) -> str:
        return "Broadcast()"


@dataclass(frozen=True)
class Scoped:
    """Audience restricted to an explicit set of peer ids (possibly empty)."""

    recipients: FrozenSet[str]
    is_broadcast = False

    def includes(self, peer_id: str) -> bool:
        return peer_id in self.recipients


Audience = Union[Broadcast, Scoped]
BROADCAST = Broadcast()


def scoped(peer_ids: Iterable[str]) -> Scoped:
    """Build a scoped audience from any iterable of peer ids."""
    return Scoped(frozenset(peer_ids))


def audience_from_wire(value: Any) -> Audience:
    """An absent ``recipients`` field is broadcast; a list is a scoped audience."""
    if value is None:
        return BROADCAST
    if isinstance(value, (list, tuple, set, frozenset)):
        return scoped(str(v) for v in value)
    raise ProtocolError(ErrorCode.E301_INVALID_BODY, "recipients must be a list", {"value": value})


def audience_to_wire(audience: Audience) -> Optional[List[str]]:
    if audience.is_broadcast:
        return None
    return sorted(audience.recipients)


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


@dataclass
class PeerIdentity:
    """A registered user as seen by the relay and by other peers."""

    id: str
    username: str
    display_name: str
    is_admin: bool = False
    public_key: Optional[str] = None  # base64 raw X25519 public key
    status: PresenceStatus = PresenceStatus.ONLINE
    last_seen: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "isAdmin": self.is_admin,
            "status": self.status.value,
            "lastSeen": self.last_seen,
        }
        if self.public_key:
            data["publicKey"] = self.public_key
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PeerIdentity":
        try:
            status = PresenceStatus(data.get("status", "online"))
        except ValueError:
            status = PresenceStatus.ONLINE
        return PeerIdentity(
            id=str(data["id"]),
            username=str(data.get("username", data["id"])),
            display_name=str(data.get("displayName", data.get("username", data["id"]))),
            is_admin=bool(data.get("isAdmin", False)),
            public_key=data.get("publicKey"),
            status=status,
            last_seen=int(data.get("lastSeen", now_ms())),
        )


@dataclass
class Device:
    """A device registered on the relay for a user."""

    id: str
    user_id: str
    name: str = ""
    kind: str = "desktop"
    ip_address: str = ""
    is_online: bool = True
    last_seen: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "type": self.kind,
            "ipAddress": self.ip_address,
            "isOnline": self.is_online,
            "lastSeen": self.last_seen,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Device":
        return Device(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            name=str(data.get("name", "")),
            kind=str(data.get("type", "desktop")),
            ip_address=str(data.get("ipAddress", "")),
            is_online=bool(data.get("isOnline", True)),
            last_seen=int(data.get("lastSeen", now_ms())),
        )


@dataclass
class Room:
    """A named channel. ``created_by`` is the current owner."""

    id: str
    name: str
    created_by: str
    participants: List[str] = field(default_factory=list)
    admins: List[str] = field(default_factory=list)
    is_public: bool = False
    created_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        # Owner is always a participant
        if self.created_by not in self.participants:
            self.participants.append(self.created_by)

    def is_participant(self, peer_id: str) -> bool:
        return peer_id in self.participants

    def is_admin(self, peer_id: str) -> bool:
        """Owner is implicitly an admin."""
        return peer_id == self.created_by or peer_id in self.admins

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdBy": self.created_by,
            "participants": list(self.participants),
            "admins": list(self.admins),
            "isPublic": self.is_public,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Room":
        participants = []
        for uid in data.get("participants") or []:
            if uid not in participants:
                participants.append(str(uid))
        admins = []
        for uid in data.get("admins") or []:
            if uid not in admins:
                admins.append(str(uid))
        return Room(
            id=str(data["id"]),
            name=str(data["name"]),
            created_by=str(data["createdBy"]),
            participants=participants,
            admins=admins,
            is_public=bool(data.get("isPublic", False)),
            created_at=int(data.get("createdAt", now_ms())),
        )


@dataclass(frozen=True)
class RoomUpdate:
    """One ``update_room`` request; any combination of fields may be set."""

    add_participant: Optional[str] = None
    remove_participant: Optional[str] = None
    add_admin: Optional[str] = None
    remove_admin: Optional[str] = None
    transfer_owner_to: Optional[str] = None

    WIRE_FIELDS = {
        "addParticipant": "add_participant",
        "removeParticipant": "remove_participant",
        "addAdmin": "add_admin",
        "removeAdmin": "remove_admin",
        "transferOwnerTo": "transfer_owner_to",
    }

    def is_empty(self) -> bool:
        return not any(getattr(self, attr) for attr in self.WIRE_FIELDS.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            wire: getattr(self, attr)
            for wire, attr in self.WIRE_FIELDS.items()
            if getattr(self, attr)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomUpdate":
        values = {attr: data.get(wire) or None for wire, attr in cls.WIRE_FIELDS.items()}
        return cls(**{k: (str(v) if v is not None else None) for k, v in values.items()})


class MessageKind(str, Enum):
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """A chat message.

    The canonical record is immutable. ``plaintext`` is the local decrypted
    view of an encrypted message; it never goes on the wire.
    """

    id: str
    sender_id: str
    sender_name: str
    content: str
    timestamp: int = field(default_factory=now_ms)
    room_id: Optional[str] = None
    kind: MessageKind = MessageKind.TEXT
    seq: Optional[int] = None
    enc: bool = False
    nonce: Optional[str] = None
    alg: Optional[str] = None
    plaintext: Optional[str] = None

    def __post_init__(self):
        if self.enc != bool(self.nonce):
            raise ProtocolError(
                ErrorCode.E301_INVALID_BODY,
                "Encrypted messages need both ciphertext and nonce",
                {"id": self.id},
            )

    @property
    def needs_decryption(self) -> bool:
        return self.enc and self.plaintext is None

    @property
    def display_text(self) -> str:
        """Text to render: plaintext, decrypted view, or opaque placeholder."""
        if not self.enc:
            return self.content
        if self.plaintext is not None:
            return self.plaintext
        return ENCRYPTED_PLACEHOLDER

    def with_plaintext(self, plaintext: Optional[str]) -> "Message":
        return replace(self, plaintext=plaintext)

    def to_dict(self, include_view: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
            "type": self.kind.value,
        }
        if self.room_id is not None:
            data["roomId"] = self.room_id
        if self.seq is not None:
            data["seq"] = self.seq
        if self.enc:
            data["enc"] = True
            data["nonce"] = self.nonce
            data["alg"] = self.alg
        if include_view and self.plaintext is not None:
            data["plaintext"] = self.plaintext
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        try:
            kind = MessageKind(data.get("type", "text"))
        except ValueError:
            kind = MessageKind.TEXT
        seq = data.get("seq")
        return Message(
            id=str(data["id"]),
            sender_id=str(data["senderId"]),
            sender_name=str(data.get("senderName", data["senderId"])),
            content=str(data["content"]),
            timestamp=int(data.get("timestamp") or now_ms()),
            room_id=data.get("roomId") or None,
            kind=kind,
            seq=int(seq) if seq is not None else None,
            enc=bool(data.get("enc", False)),
            nonce=data.get("nonce") or None,
            alg=data.get("alg"),
            plaintext=data.get("plaintext"),
        )


@dataclass(frozen=True)
class KeyEnvelope:
    """A room key wrapped for exactly one recipient. All fields are base64."""

    sender_id: str
    epk: str
    salt: str
    nonce: str
    ciphertext: str

    def envelope_dict(self) -> Dict[str, str]:
        return {"epk": self.epk, "salt": self.salt, "nonce": self.nonce, "ciphertext": self.ciphertext}

    def to_dict(self) -> Dict[str, Any]:
        return {"fromUserId": self.sender_id, "envelope": self.envelope_dict()}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "KeyEnvelope":
        env = data.get("envelope")
        if not isinstance(env, dict):
            env = {}
        fields = ("epk", "salt", "nonce", "ciphertext")
        missing = [k for k in fields if not env.get(k)]
        if missing:
            raise ProtocolError(
                ErrorCode.E303_MISSING_FIELD,
                f"Envelope missing fields: {', '.join(missing)}",
                {"missing": missing},
            )
        invalid = [k for k in fields if not isinstance(env[k], str)]
        if invalid:
            raise ProtocolError(
                ErrorCode.E301_INVALID_BODY,
                f"Envelope fields must be strings: {', '.join(invalid)}",
                {"invalid": invalid},
            )
        return KeyEnvelope(
            sender_id=str(data.get("fromUserId", "")),
            epk=env["epk"],
            salt=env["salt"],
            nonce=env["nonce"],
            ciphertext=env["ciphertext"],
        )


class TransferStatus(str, Enum):
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Transfer:
    """Local record of an outbound or inbound file transfer."""

    id: str
    file_name: str
    file_size: int
    sender_id: str
    sender_name: str
    total_chunks: int
    audience: Audience = BROADCAST
    status: TransferStatus = TransferStatus.PENDING
    progress: int = 0
    timestamp: int = field(default_factory=now_ms)
    receiver_id: Optional[str] = None
    download_path: Optional[str] = None

    @property
    def is_inbound(self) -> bool:
        return self.receiver_id is not None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "totalChunks": self.total_chunks,
            "status": self.status.value,
            "progress": self.progress,
            "timestamp": self.timestamp,
        }
        recipients = audience_to_wire(self.audience)
        if recipients is not None:
            data["recipients"] = recipients
        if self.receiver_id:
            data["receiverId"] = self.receiver_id
        if self.download_path:
            data["downloadPath"] = self.download_path
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Transfer":
        return Transfer(
            id=str(data["id"]),
            file_name=str(data["fileName"]),
            file_size=int(data["fileSize"]),
            sender_id=str(data["senderId"]),
            sender_name=str(data.get("senderName", data["senderId"])),
            total_chunks=int(data["totalChunks"]),
            audience=audience_from_wire(data.get("recipients")),
            status=TransferStatus(data.get("status", "pending")),
            progress=int(data.get("progress", 0)),
            timestamp=int(data.get("timestamp", now_ms())),
            receiver_id=data.get("receiverId"),
            download_path=data.get("downloadPath"),
        )


@dataclass(frozen=True)
class TransferAnnouncement:
    """A transfer listed by the relay for a prospective receiver."""

    id: str
    sender_id: str
    sender_name: str
    file_name: str
    file_size: int
    total_chunks: int
    completed: bool = False
    encrypted: bool = True
    available_chunks: List[int] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TransferAnnouncement":
        return TransferAnnouncement(
            id=str(data["id"]),
            sender_id=str(data["senderId"]),
            sender_name=str(data.get("senderName", data["senderId"])),
            file_name=str(data["fileName"]),
            file_size=int(data["fileSize"]),
            total_chunks=int(data["totalChunks"]),
            completed=bool(data.get("completed", False)),
            encrypted=bool(data.get("encrypted", True)),
            available_chunks=sorted(int(i) for i in data.get("availableChunks") or []),
        )
