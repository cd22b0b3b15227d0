"""
LAN Hub - Relay protocol definitions.

This module defines the request/response protocol spoken between peers and
the relay. Each request is a single JSON object on one line:

    {"type": "<request kind>", "payload": {...}}

and each response is a single JSON object on one line that always carries
an HTTP-like integer ``status``. Successful responses also carry
``"success": true``; failures carry ``"error"``.

The set of request kinds is closed: ``decode_request`` turns a raw body
into one typed request object and raises ``ProtocolError`` (status 400) for
anything else.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .constants import MAX_REQUEST_SIZE
from .errors import ErrorCode, ProtocolError
from .models import (
    BROADCAST,
    Audience,
    Device,
    KeyEnvelope,
    Message,
    PeerIdentity,
    RoomUpdate,
    audience_from_wire,
)


class RequestType(str, Enum):
    """Request kinds accepted by the relay."""

    # Presence
    REGISTER_USER = "register_user"
    UNREGISTER_USER = "unregister_user"
    HEARTBEAT = "heartbeat"
    REGISTER_DEVICE = "register_device"

    # Messaging
    SEND_MESSAGE = "send_message"
    GET_STATE = "get_state"

    # Rooms
    CREATE_ROOM = "create_room"
    UPDATE_ROOM = "update_room"
    DELETE_ROOM = "delete_room"

    # Key exchange
    KEY_UPDATE = "key_update"

    # File transfer
    INIT_FILE_TRANSFER = "init_file_transfer"
    UPLOAD_CHUNK = "upload_chunk"
    LIST_FILE_TRANSFERS = "list_file_transfers"
    DOWNLOAD_FILE_CHUNK = "download_file_chunk"


def _require(payload: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if payload.get(name) in (None, "")]
    if missing:
        raise ProtocolError(
            ErrorCode.E303_MISSING_FIELD,
            f"Missing required fields: {', '.join(missing)}",
            {"missing": missing},
        )


def _int_field(payload: Dict[str, Any], name: str, default: Optional[int] = None) -> int:
    value = payload.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(
            ErrorCode.E301_INVALID_BODY,
            f"Field '{name}' must be an integer",
            {"field": name, "value": value},
        )
    return value


@dataclass(frozen=True)
class RegisterUserRequest:
    user: PeerIdentity

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "RegisterUserRequest":
        _require(payload, "id")
        return RegisterUserRequest(PeerIdentity.from_dict(payload))


@dataclass(frozen=True)
class UnregisterUserRequest:
    user_id: str

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "UnregisterUserRequest":
        _require(payload, "userId")
        return UnregisterUserRequest(str(payload["userId"]))


@dataclass(frozen=True)
class HeartbeatRequest:
    user_id: str
    last_seq: int = 0

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "HeartbeatRequest":
        _require(payload, "userId")
        return HeartbeatRequest(str(payload["userId"]), _int_field(payload, "lastSeq", 0))


@dataclass(frozen=True)
class RegisterDeviceRequest:
    device: Device

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "RegisterDeviceRequest":
        _require(payload, "id", "userId")
        return RegisterDeviceRequest(Device.from_dict(payload))


@dataclass(frozen=True)
class SendMessageRequest:
    message: Message

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "SendMessageRequest":
        _require(payload, "id", "senderId", "content")
        # seq is assigned by the relay; a client value is ignored
        return SendMessageRequest(Message.from_dict({**payload, "seq": None}))


@dataclass(frozen=True)
class GetStateRequest:
    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "GetStateRequest":
        return GetStateRequest()


@dataclass(frozen=True)
class CreateRoomRequest:
    id: str
    name: str
    created_by: str
    is_public: bool = False
    participants: List[str] = field(default_factory=list)
    admins: List[str] = field(default_factory=list)

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "CreateRoomRequest":
        _require(payload, "id", "name", "createdBy")
        return CreateRoomRequest(
            id=str(payload["id"]),
            name=str(payload["name"]),
            created_by=str(payload["createdBy"]),
            is_public=bool(payload.get("isPublic", False)),
            participants=[str(p) for p in payload.get("participants") or []],
            admins=[str(a) for a in payload.get("admins") or []],
        )


@dataclass(frozen=True)
class UpdateRoomRequest:
    room_id: str
    by_user_id: str
    update: RoomUpdate

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "UpdateRoomRequest":
        _require(payload, "roomId", "byUserId")
        update = RoomUpdate.from_dict(payload)
        if update.is_empty():
            raise ProtocolError(
                ErrorCode.E303_MISSING_FIELD,
                "update_room needs at least one change",
                {"fields": list(RoomUpdate.WIRE_FIELDS)},
            )
        return UpdateRoomRequest(str(payload["roomId"]), str(payload["byUserId"]), update)


@dataclass(frozen=True)
class DeleteRoomRequest:
    room_id: str
    by_user_id: str

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "DeleteRoomRequest":
        _require(payload, "roomId", "byUserId")
        return DeleteRoomRequest(str(payload["roomId"]), str(payload["byUserId"]))


@dataclass(frozen=True)
class KeyUpdateRequest:
    target_user_id: str
    envelope: KeyEnvelope

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "KeyUpdateRequest":
        _require(payload, "targetUserId", "envelope")
        if not isinstance(payload["envelope"], dict):
            raise ProtocolError(ErrorCode.E301_INVALID_BODY, "envelope must be an object")
        return KeyUpdateRequest(str(payload["targetUserId"]), KeyEnvelope.from_dict(payload))


@dataclass(frozen=True)
class InitFileTransferRequest:
    id: str
    sender_id: str
    sender_name: str
    file_name: str
    file_size: int
    total_chunks: int
    audience: Audience = BROADCAST
    encrypted: bool = True

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "InitFileTransferRequest":
        _require(payload, "id", "senderId", "fileName", "totalChunks")
        total_chunks = _int_field(payload, "totalChunks")
        if total_chunks < 1:
            raise ProtocolError(ErrorCode.E301_INVALID_BODY, "totalChunks must be at least 1")
        return InitFileTransferRequest(
            id=str(payload["id"]),
            sender_id=str(payload["senderId"]),
            sender_name=str(payload.get("senderName", payload["senderId"])),
            file_name=str(payload["fileName"]),
            file_size=_int_field(payload, "fileSize", 0),
            total_chunks=total_chunks,
            audience=audience_from_wire(payload.get("recipients")),
            encrypted=bool(payload.get("encrypted", True)),
        )


@dataclass(frozen=True)
class UploadChunkRequest:
    transfer_id: str
    index: int
    data: str
    nonce: str = ""
    total_chunks: Optional[int] = None

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "UploadChunkRequest":
        _require(payload, "transferId")
        if not isinstance(payload.get("data"), str):
            raise ProtocolError(ErrorCode.E303_MISSING_FIELD, "Missing required fields: data")
        total = payload.get("totalChunks")
        return UploadChunkRequest(
            transfer_id=str(payload["transferId"]),
            index=_int_field(payload, "index"),
            data=str(payload["data"]),
            nonce=str(payload.get("nonce") or ""),
            total_chunks=_int_field(payload, "totalChunks") if total is not None else None,
        )


@dataclass(frozen=True)
class ListFileTransfersRequest:
    user_id: str

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "ListFileTransfersRequest":
        _require(payload, "userId")
        return ListFileTransfersRequest(str(payload["userId"]))


@dataclass(frozen=True)
class DownloadFileChunkRequest:
    user_id: str
    transfer_id: str
    index: int

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "DownloadFileChunkRequest":
        _require(payload, "userId", "transferId")
        return DownloadFileChunkRequest(
            str(payload["userId"]), str(payload["transferId"]), _int_field(payload, "index")
        )


REQUEST_CLASSES = {
    RequestType.REGISTER_USER: RegisterUserRequest,
    RequestType.UNREGISTER_USER: UnregisterUserRequest,
    RequestType.HEARTBEAT: HeartbeatRequest,
    RequestType.REGISTER_DEVICE: RegisterDeviceRequest,
    RequestType.SEND_MESSAGE: SendMessageRequest,
    RequestType.GET_STATE: GetStateRequest,
    RequestType.CREATE_ROOM: CreateRoomRequest,
    RequestType.UPDATE_ROOM: UpdateRoomRequest,
    RequestType.DELETE_ROOM: DeleteRoomRequest,
    RequestType.KEY_UPDATE: KeyUpdateRequest,
    RequestType.INIT_FILE_TRANSFER: InitFileTransferRequest,
    RequestType.UPLOAD_CHUNK: UploadChunkRequest,
    RequestType.LIST_FILE_TRANSFERS: ListFileTransfersRequest,
    RequestType.DOWNLOAD_FILE_CHUNK: DownloadFileChunkRequest,
}


def decode_request(body: Any):
    """
    Turn a request body into a typed request object.

    Args:
        body: Parsed JSON body ``{"type": ..., "payload": {...}}``

    Returns:
        One of the ``*Request`` dataclasses in this module

    Raises:
        ProtocolError: If the body is malformed, the type is unknown or
            required fields are missing (all status 400)
    """
    if not isinstance(body, dict):
        raise ProtocolError(ErrorCode.E301_INVALID_BODY, "Request body must be a JSON object")

    try:
        request_type = RequestType(body.get("type"))
    except ValueError:
        raise ProtocolError(
            ErrorCode.E302_UNKNOWN_TYPE,
            "Unknown request type",
            {"type": body.get("type")},
        )

    payload = body.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError(ErrorCode.E301_INVALID_BODY, "payload must be a JSON object")

    try:
        return REQUEST_CLASSES[request_type].from_payload(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(
            ErrorCode.E301_INVALID_BODY,
            f"Invalid {request_type.value} payload: {e}",
            {"type": request_type.value},
        )


def encode_request(request_type: RequestType, payload: Optional[Dict[str, Any]] = None) -> bytes:
    """Frame a request as one JSON line."""
    return encode_line({"type": RequestType(request_type).value, "payload": payload or {}})


def encode_line(obj: Dict[str, Any]) -> bytes:
    """
    Serialize an object as a newline-terminated JSON line.

    Raises:
        ProtocolError: If the encoded line exceeds the request size limit
    """
    data = json.dumps(obj, separators=(",", ":")).encode("utf-8") + b"\n"
    if len(data) > MAX_REQUEST_SIZE:
        raise ProtocolError(
            ErrorCode.E304_MESSAGE_TOO_LARGE,
            f"Frame too large: {len(data)} bytes",
            {"size": len(data), "max_size": MAX_REQUEST_SIZE},
            status=413,
        )
    return data


def decode_line(line: bytes) -> Any:
    """
    Parse one JSON line.

    Raises:
        ProtocolError: If the line is not valid UTF-8 JSON
    """
    try:
        return json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(ErrorCode.E301_INVALID_BODY, f"Invalid JSON body: {e}")


def ok_response(status: int = 200, **fields: Any) -> Dict[str, Any]:
    """Build a success response."""
    response = {"status": status, "success": True}
    response.update(fields)
    return response


def error_response(status: int, message: str) -> Dict[str, Any]:
    """Build a failure response."""
    return {"status": status, "error": message}
