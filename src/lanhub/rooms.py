"""
LAN Hub - Room authorization and management.

Role model for rooms, the write gate applied before any message leaves a
peer, the single mutation function the relay uses for ``update_room``, and
the client-side ``RoomManager`` that issues room requests and handles
invitation codes.
"""

import json
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Iterable, Optional

from .constants import INVITE_CODE_VERSION
from .errors import ErrorCode, RoomError, TransportError
from .models import PeerIdentity, Room, RoomUpdate
from .protocol import RequestType
from .utils import b64url_decode, b64url_encode, generate_id, now_ms

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """A peer's standing in a room, ordered by privilege."""

    NON_MEMBER = 0
    PARTICIPANT = 1
    ADMIN = 2
    OWNER = 3


def role_of(room: Room, peer_id: str) -> Role:
    if peer_id == room.created_by:
        return Role.OWNER
    if peer_id in room.admins:
        return Role.ADMIN
    if peer_id in room.participants:
        return Role.PARTICIPANT
    return Role.NON_MEMBER


def can_write(room: Optional[Room], peer: PeerIdentity) -> bool:
    """
    Write gate for outgoing messages.

    The global channel (no room) accepts only identity-level admins; a room
    accepts anyone when public, otherwise only its participants.
    """
    if room is None:
        return peer.is_admin
    return room.is_public or room.is_participant(peer.id)


def can_delete(room: Room, actor_id: str) -> bool:
    return role_of(room, actor_id) == Role.OWNER


@dataclass
class UpdateOutcome:
    """Result of applying a room update: the resulting room and whether it was allowed."""

    room: Room
    allowed: bool
    reason: str = ""


def apply_room_update(room: Room, actor_id: str, update: RoomUpdate) -> UpdateOutcome:
    """
    Apply one ``update_room`` request to a copy of ``room``.

    The actor must be the owner or an admin. Every present field of the
    update is applied in this order: add participant, remove participant,
    add admin, remove admin, transfer ownership.

    - Removing a participant also strips admin status; the owner cannot
      be removed.
    - Adding an admin also adds the participant; naming the owner is a no-op.
    - Ownership moves only to an existing participant; the outgoing owner
      becomes an admin.

    Authorization failures are reported in the outcome, not raised.
    """
    if role_of(room, actor_id) < Role.ADMIN:
        return UpdateOutcome(room, False, "Only owner or admins can modify the room")

    updated = Room.from_dict(room.to_dict())
    participants = updated.participants
    admins = updated.admins

    if update.add_participant and update.add_participant not in participants:
        participants.append(update.add_participant)

    if update.remove_participant and update.remove_participant != updated.created_by:
        if update.remove_participant in participants:
            participants.remove(update.remove_participant)
        if update.remove_participant in admins:
            admins.remove(update.remove_participant)

    if update.add_admin and update.add_admin != updated.created_by:
        if update.add_admin not in admins:
            admins.append(update.add_admin)
        if update.add_admin not in participants:
            participants.append(update.add_admin)

    if update.remove_admin and update.remove_admin in admins:
        admins.remove(update.remove_admin)

    target = update.transfer_owner_to
    if target and target in participants and target != updated.created_by:
        previous_owner = updated.created_by
        updated.created_by = target
        if target in admins:
            admins.remove(target)
        if previous_owner not in admins:
            admins.append(previous_owner)

    return UpdateOutcome(updated, True)


@dataclass(frozen=True)
class InviteCode:
    """Decoded invitation code for a private room."""

    room_id: str
    name: str
    inviter_id: str
    ts: int
    is_public: bool = False
    version: int = INVITE_CODE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": self.version,
            "roomId": self.room_id,
            "name": self.name,
            "isPublic": self.is_public,
            "inviterId": self.inviter_id,
            "ts": self.ts,
        }


def encode_invite(room: Room, inviter_id: str) -> str:
    """Encode an invitation as base64url JSON without padding."""
    invite = InviteCode(room.id, room.name, inviter_id, now_ms())
    return b64url_encode(json.dumps(invite.to_dict(), separators=(",", ":")))


def decode_invite(code: str) -> InviteCode:
    """
    Decode and validate an invitation code.

    Raises:
        RoomError: If the code is not a version-1 invitation naming a room
    """
    try:
        payload = json.loads(b64url_decode(code.strip()))
    except json.JSONDecodeError:
        raise RoomError(ErrorCode.E504_INVALID_INVITE, "Invitation code is not valid")

    if not isinstance(payload, dict) or payload.get("v") != INVITE_CODE_VERSION:
        raise RoomError(ErrorCode.E504_INVALID_INVITE, "Unsupported invitation version")
    if not payload.get("roomId") or not payload.get("name"):
        raise RoomError(ErrorCode.E504_INVALID_INVITE, "Invitation is missing the room")

    ts = payload.get("ts")
    return InviteCode(
        room_id=str(payload["roomId"]),
        name=str(payload["name"]),
        inviter_id=str(payload.get("inviterId") or ""),
        ts=ts if isinstance(ts, int) else now_ms(),
    )


class RoomManager:
    """
    Client-side room operations.

    Each relay-backed operation returns a boolean and, on success, replaces
    the local room roster with the one the relay returned.
    """

    def __init__(self, sync):
        self.sync = sync

    @property
    def user(self) -> PeerIdentity:
        return self.sync.user

    async def _room_request(self, request_type: RequestType, payload: Dict[str, Any]) -> bool:
        try:
            response = await self.sync.transport.request(request_type, payload)
        except TransportError as e:
            logger.warning(f"{request_type.value} failed: {e.message}")
            return False

        rooms = response.get("rooms")
        if not isinstance(rooms, list):
            return False
        await self.sync.replace_rooms(Room.from_dict(r) for r in rooms)
        return True

    async def create_room(
        self,
        name: str,
        is_public: bool = False,
        participants: Iterable[str] = (),
        room_id: Optional[str] = None,
    ) -> Optional[Room]:
        """
        Create a room owned by the current user.

        The room is stored locally first, then announced to the relay.

        Returns:
            The created room, or None if the name is empty
        """
        name = name.strip()
        if not name:
            return None

        members = [self.user.id]
        for peer_id in participants:
            if peer_id not in members:
                members.append(peer_id)

        room = Room(
            id=room_id or generate_id(),
            name=name,
            created_by=self.user.id,
            participants=members,
            is_public=is_public,
        )
        await self.sync.upsert_room(room)
        logger.info(f"Created room '{name}' ({room.id})")

        await self._room_request(RequestType.CREATE_ROOM, room.to_dict())
        return room

    async def add_participant(self, room_id: str, peer_id: str) -> bool:
        return await self._room_request(
            RequestType.UPDATE_ROOM,
            {"roomId": room_id, "byUserId": self.user.id, "addParticipant": peer_id},
        )

    async def kick(self, room_id: str, peer_id: str) -> bool:
        return await self._room_request(
            RequestType.UPDATE_ROOM,
            {"roomId": room_id, "byUserId": self.user.id, "removeParticipant": peer_id},
        )

    async def set_admin(self, room_id: str, peer_id: str, make_admin: bool) -> bool:
        field = "addAdmin" if make_admin else "removeAdmin"
        return await self._room_request(
            RequestType.UPDATE_ROOM,
            {"roomId": room_id, "byUserId": self.user.id, field: peer_id},
        )

    async def transfer_owner(self, room_id: str, new_owner_id: str) -> bool:
        return await self._room_request(
            RequestType.UPDATE_ROOM,
            {"roomId": room_id, "byUserId": self.user.id, "transferOwnerTo": new_owner_id},
        )

    async def delete_room(self, room_id: str) -> bool:
        return await self._room_request(
            RequestType.DELETE_ROOM, {"roomId": room_id, "byUserId": self.user.id}
        )

    def generate_invite_code(self, room_id: str) -> Optional[str]:
        """
        Issue an invitation code for a private room the user belongs to.

        Returns None for unknown or public rooms, or when the user is not a
        participant.
        """
        room = self.sync.rooms.get(room_id)
        if room is None or room.is_public:
            return None
        if not room.is_participant(self.user.id):
            return None
        return encode_invite(room, self.user.id)

    async def join_room_with_code(self, code: str) -> bool:
        """
        Redeem an invitation code into the local room roster.

        An existing room gains the redeemer and inviter as participants;
        otherwise a provisional private room owned by the inviter is created.
        """
        try:
            invite = decode_invite(code)
        except RoomError as e:
            logger.warning(f"Rejected invitation code: {e.message}")
            return False

        existing = self.sync.rooms.get(invite.room_id)
        if existing is not None:
            room = Room.from_dict(existing.to_dict())
            for peer_id in (self.user.id, invite.inviter_id):
                if peer_id and peer_id not in room.participants:
                    room.participants.append(peer_id)
        else:
            owner = invite.inviter_id or self.user.id
            participants = [owner]
            if self.user.id not in participants:
                participants.append(self.user.id)
            room = Room(
                id=invite.room_id,
                name=invite.name,
                created_by=owner,
                participants=participants,
                is_public=False,
                created_at=invite.ts,
            )

        await self.sync.upsert_room(room)
        logger.info(f"Joined room '{room.name}' with invitation code")
        return True
