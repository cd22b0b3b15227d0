"""
LAN Hub - In-memory relay.

The relay is the rendezvous point peers poll against. It keeps presence,
the recent message history, rooms, devices, queued key envelopes and file
transfer chunks in memory only; every start begins from an empty state.

``RelayState`` answers one decoded request at a time and is shared by the
asyncio ``RelayServer`` and by the in-process transport used in tests.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Config
from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    MAX_REQUEST_SIZE,
    MESSAGE_HISTORY_LIMIT,
    PRESENCE_PRUNE_INTERVAL,
    PRESENCE_TIMEOUT,
    VERSION,
)
from .errors import ProtocolError
from .models import (
    Audience,
    Device,
    Message,
    PeerIdentity,
    PresenceStatus,
    Room,
    audience_to_wire,
)
from .protocol import (
    CreateRoomRequest,
    DeleteRoomRequest,
    DownloadFileChunkRequest,
    GetStateRequest,
    HeartbeatRequest,
    InitFileTransferRequest,
    KeyUpdateRequest,
    ListFileTransfersRequest,
    RegisterDeviceRequest,
    RegisterUserRequest,
    SendMessageRequest,
    UnregisterUserRequest,
    UpdateRoomRequest,
    UploadChunkRequest,
    decode_line,
    decode_request,
    encode_line,
    error_response,
    ok_response,
)
from .rooms import apply_room_update, can_delete
from .utils import now_ms, setup_logging

logger = logging.getLogger(__name__)


@dataclass
class RelayTransfer:
    """A file transfer held by the relay: metadata plus received chunks."""

    id: str
    sender_id: str
    sender_name: str
    file_name: str
    file_size: int
    total_chunks: int
    audience: Audience
    created_at: int
    encrypted: bool = True
    chunks: Dict[int, Tuple[str, str]] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return len(self.chunks) >= self.total_chunks

    def summary(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "totalChunks": self.total_chunks,
            "createdAt": self.created_at,
            "completed": self.completed,
            "encrypted": self.encrypted,
        }
        recipients = audience_to_wire(self.audience)
        if recipients is not None:
            data["recipients"] = recipients
        return data


class RelayState:
    """
    Volatile relay state and the request handlers that operate on it.

    Attributes:
        history_limit: Number of most recent messages retained
        presence_timeout: Seconds of silence before a user or device is pruned
    """

    def __init__(
        self,
        history_limit: int = MESSAGE_HISTORY_LIMIT,
        presence_timeout: float = PRESENCE_TIMEOUT,
        clock: Callable[[], int] = now_ms,
    ):
        self.history_limit = history_limit
        self.presence_timeout = presence_timeout
        self.clock = clock
        self.reset()

    def reset(self) -> None:
        """Forget everything, as a relay restart does."""
        self.message_seq = 0
        self.messages: List[Message] = []
        self.users: Dict[str, PeerIdentity] = {}
        self.devices: Dict[str, Device] = {}
        self.rooms: Dict[str, Room] = {}
        self.key_updates: Dict[str, List[Dict[str, Any]]] = {}
        self.transfers: Dict[str, RelayTransfer] = {}

    def handle(self, body: Any) -> Dict[str, Any]:
        """
        Answer one request body.

        Returns:
            Response dictionary carrying an HTTP-like ``status``
        """
        try:
            request = decode_request(body)
        except ProtocolError as e:
            logger.debug(f"Rejected request: {e}")
            return error_response(e.status, e.message)

        try:
            return self._dispatch(request)
        except Exception as e:
            logger.error(f"Relay handler failed: {e}", exc_info=True)
            return error_response(500, "Server error")

    def _dispatch(self, request) -> Dict[str, Any]:
        if isinstance(request, RegisterUserRequest):
            return self._handle_register_user(request)

        elif isinstance(request, UnregisterUserRequest):
            self.users.pop(request.user_id, None)
            logger.info(f"User {request.user_id} unregistered")
            return ok_response(onlineUsers=self._user_list())

        elif isinstance(request, HeartbeatRequest):
            return self._handle_heartbeat(request)

        elif isinstance(request, SendMessageRequest):
            return self._handle_send_message(request)

        elif isinstance(request, CreateRoomRequest):
            return self._handle_create_room(request)

        elif isinstance(request, UpdateRoomRequest):
            return self._handle_update_room(request)

        elif isinstance(request, DeleteRoomRequest):
            return self._handle_delete_room(request)

        elif isinstance(request, RegisterDeviceRequest):
            device = replace(request.device, last_seen=self.clock(), is_online=True)
            self.devices[device.id] = device
            return ok_response(devices=self._device_list())

        elif isinstance(request, KeyUpdateRequest):
            self.key_updates.setdefault(request.target_user_id, []).append(
                {**request.envelope.to_dict(), "timestamp": self.clock()}
            )
            logger.debug(f"Queued key envelope for {request.target_user_id}")
            return ok_response()

        elif isinstance(request, InitFileTransferRequest):
            return self._handle_init_file_transfer(request)

        elif isinstance(request, UploadChunkRequest):
            return self._handle_upload_chunk(request)

        elif isinstance(request, ListFileTransfersRequest):
            return self._handle_list_file_transfers(request)

        elif isinstance(request, DownloadFileChunkRequest):
            return self._handle_download_file_chunk(request)

        elif isinstance(request, GetStateRequest):
            return ok_response(
                onlineUsers=self._user_list(),
                messages=[m.to_dict() for m in self.messages],
                lastSeq=self.message_seq,
                devices=self._device_list(),
                rooms=self._room_list(),
            )

        return error_response(400, "Unknown type")

    def _user_list(self) -> List[Dict[str, Any]]:
        return [u.to_dict() for u in self.users.values()]

    def _device_list(self) -> List[Dict[str, Any]]:
        return [d.to_dict() for d in self.devices.values()]

    def _room_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.rooms.values()]

    def _handle_register_user(self, request: RegisterUserRequest) -> Dict[str, Any]:
        user = replace(request.user, last_seen=self.clock(), status=PresenceStatus.ONLINE)
        self.users[user.id] = user
        logger.info(f"User {user.id} ({user.username}) registered")
        return ok_response(
            onlineUsers=self._user_list(),
            messages=[m.to_dict() for m in self.messages],
        )

    def _handle_heartbeat(self, request: HeartbeatRequest) -> Dict[str, Any]:
        now = self.clock()
        user_id = request.user_id

        if user_id in self.users:
            self.users[user_id] = replace(self.users[user_id], last_seen=now)

        for device_id, device in list(self.devices.items()):
            if device.user_id == user_id:
                self.devices[device_id] = replace(device, last_seen=now, is_online=True)

        new_messages = [m.to_dict() for m in self.messages if (m.seq or 0) > request.last_seq]
        announcements = [
            t.summary()
            for t in self.transfers.values()
            if t.sender_id != user_id and t.audience.includes(user_id)
        ]
        queued = self.key_updates.pop(user_id, [])

        return ok_response(
            onlineUsers=self._user_list(),
            newMessages=new_messages,
            lastSeq=self.message_seq,
            keyUpdates=queued,
            fileAnnouncements=announcements,
            devices=self._device_list(),
            rooms=self._room_list(),
        )

    def _handle_send_message(self, request: SendMessageRequest) -> Dict[str, Any]:
        self.message_seq += 1
        message = replace(request.message, seq=self.message_seq, plaintext=None)
        self.messages.append(message)
        if len(self.messages) > self.history_limit:
            self.messages = self.messages[-self.history_limit:]
        return ok_response(message=message.to_dict())

    def _handle_create_room(self, request: CreateRoomRequest) -> Dict[str, Any]:
        if request.id in self.rooms:
            return error_response(400, "Room already exists")

        participants = []
        for peer_id in list(request.participants) + list(request.admins) + [request.created_by]:
            if peer_id not in participants:
                participants.append(peer_id)
        admins = [a for a in dict.fromkeys(request.admins) if a != request.created_by]

        room = Room(
            id=request.id,
            name=request.name,
            created_by=request.created_by,
            participants=participants,
            admins=admins,
            is_public=request.is_public,
            created_at=self.clock(),
        )
        self.rooms[room.id] = room
        logger.info(f"Room '{room.name}' ({room.id}) created by {room.created_by}")
        return ok_response(rooms=self._room_list())

    def _handle_update_room(self, request: UpdateRoomRequest) -> Dict[str, Any]:
        room = self.rooms.get(request.room_id)
        if room is None:
            return error_response(404, "Room not found")

        outcome = apply_room_update(room, request.by_user_id, request.update)
        if not outcome.allowed:
            return error_response(403, "Forbidden")

        self.rooms[room.id] = outcome.room
        return ok_response(room=outcome.room.to_dict(), rooms=self._room_list())

    def _handle_delete_room(self, request: DeleteRoomRequest) -> Dict[str, Any]:
        room = self.rooms.get(request.room_id)
        if room is None:
            return ok_response()
        if not can_delete(room, request.by_user_id):
            return error_response(403, "Forbidden")

        del self.rooms[room.id]
        logger.info(f"Room {room.id} deleted by {request.by_user_id}")
        return ok_response(rooms=self._room_list())

    def _handle_init_file_transfer(self, request: InitFileTransferRequest) -> Dict[str, Any]:
        self.transfers[request.id] = RelayTransfer(
            id=request.id,
            sender_id=request.sender_id,
            sender_name=request.sender_name,
            file_name=request.file_name,
            file_size=request.file_size,
            total_chunks=request.total_chunks,
            audience=request.audience,
            created_at=self.clock(),
            encrypted=request.encrypted,
        )
        logger.info(
            f"Transfer {request.id} announced: {request.file_name} "
            f"({request.total_chunks} chunks)"
        )
        return ok_response()

    def _handle_upload_chunk(self, request: UploadChunkRequest) -> Dict[str, Any]:
        transfer = self.transfers.get(request.transfer_id)
        if transfer is None:
            return error_response(400, "Unknown transfer")
        if not 0 <= request.index < transfer.total_chunks:
            return error_response(400, "Chunk index out of range")

        transfer.chunks[request.index] = (request.data, request.nonce)
        return ok_response(received=request.index)

    def _handle_list_file_transfers(self, request: ListFileTransfersRequest) -> Dict[str, Any]:
        transfers = []
        for transfer in self.transfers.values():
            if transfer.sender_id == request.user_id:
                continue
            if not transfer.audience.includes(request.user_id):
                continue
            transfers.append({
                "id": transfer.id,
                "senderId": transfer.sender_id,
                "senderName": transfer.sender_name,
                "fileName": transfer.file_name,
                "fileSize": transfer.file_size,
                "totalChunks": transfer.total_chunks,
                "completed": transfer.completed,
                "encrypted": transfer.encrypted,
                "availableChunks": sorted(transfer.chunks),
            })
        return ok_response(transfers=transfers)

    def _handle_download_file_chunk(self, request: DownloadFileChunkRequest) -> Dict[str, Any]:
        transfer = self.transfers.get(request.transfer_id)
        if transfer is None:
            return error_response(404, "Not found")
        if not transfer.audience.includes(request.user_id):
            return error_response(403, "Forbidden")

        chunk = transfer.chunks.get(request.index)
        if chunk is None:
            return error_response(404, "Chunk not ready")

        data, nonce = chunk
        return ok_response(index=request.index, data=data, nonce=nonce)

    def prune_stale(self) -> int:
        """
        Drop users and devices silent for longer than the presence timeout.

        Returns:
            Number of entries removed
        """
        cutoff = self.clock() - int(self.presence_timeout * 1000)
        stale_users = [uid for uid, u in self.users.items() if u.last_seen < cutoff]
        stale_devices = [did for did, d in self.devices.items() if d.last_seen < cutoff]

        for uid in stale_users:
            del self.users[uid]
        for did in stale_devices:
            del self.devices[did]

        if stale_users or stale_devices:
            logger.info(
                f"Pruned {len(stale_users)} stale users and {len(stale_devices)} stale devices"
            )
        return len(stale_users) + len(stale_devices)


class RelayServer:
    """
    Asyncio TCP server exposing a ``RelayState``.

    Each connection carries newline-delimited JSON requests; every request
    line receives exactly one response line.
    """

    def __init__(
        self,
        host: str,
        port: int,
        state: Optional[RelayState] = None,
        prune_interval: float = PRESENCE_PRUNE_INTERVAL,
    ):
        self.host = host
        self.port = port
        self.state = state or RelayState()
        self.prune_interval = prune_interval
        self.server: Optional[asyncio.AbstractServer] = None
        self.running = False
        self._prune_task: Optional[asyncio.Task] = None

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful when started on port 0)."""
        if self.server and self.server.sockets:
            return self.server.sockets[0].getsockname()[1]
        return self.port

    async def start(self) -> bool:
        """
        Start listening.

        Returns:
            True if the server started, False on error
        """
        try:
            self.state.reset()
            self.server = await asyncio.start_server(
                self._handle_client, self.host, self.port, limit=MAX_REQUEST_SIZE
            )
            self.running = True
            self._prune_task = asyncio.create_task(self._prune_loop())
            logger.info(f"LAN Hub relay {VERSION} listening on {self.host}:{self.bound_port}")
            return True

        except OSError as e:
            logger.error(f"Failed to start relay: {e}", exc_info=True)
            return False

    async def stop(self) -> None:
        """Stop the server and the housekeeping task."""
        logger.info("Stopping relay...")
        self.running = False

        if self._prune_task:
            self._prune_task.cancel()
            try:
                await self._prune_task
            except asyncio.CancelledError:
                pass
            self._prune_task = None

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        logger.info("Relay stopped")

    async def run(self) -> None:
        """Block until the server is stopped."""
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.stop()

    async def _prune_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.prune_interval)
            self.state.prune_stale()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        address = writer.get_extra_info("peername")
        logger.debug(f"Connection from {address}")

        try:
            while self.running:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    response = error_response(413, "Request too large")
                    writer.write(encode_line(response))
                    await writer.drain()
                    break

                if not line:
                    break
                line = line.strip()
                if not line:
                    continue

                try:
                    body = decode_line(line)
                except ProtocolError as e:
                    logger.warning(f"Invalid JSON from {address}: {e.message}")
                    response = error_response(400, "Invalid JSON body")
                else:
                    response = self.state.handle(body)

                writer.write(encode_line(response))
                await writer.drain()

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Connection from {address} closed: {e}")
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing writer: {e}")


async def async_main(argv: Optional[List[str]] = None) -> None:
    """Async entry point for the relay."""
    import argparse

    parser = argparse.ArgumentParser(description="LAN Hub relay - volatile in-memory rendezvous server")
    parser.add_argument("--host", type=str, default=None, help="Interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory holding config.toml and logs",
    )
    args = parser.parse_args(argv)

    data_dir = Path(args.data_dir or DEFAULT_DATA_DIR).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    config = Config(data_dir / CONFIG_FILENAME)
    setup_logging(config, data_dir)

    state = RelayState(
        history_limit=config.get("presence", "history_limit", MESSAGE_HISTORY_LIMIT),
        presence_timeout=config.get("presence", "timeout", PRESENCE_TIMEOUT),
    )
    server = RelayServer(
        args.host or config.get("relay", "host"),
        args.port or config.get("relay", "port"),
        state=state,
        prune_interval=config.get("presence", "prune_interval", PRESENCE_PRUNE_INTERVAL),
    )

    if not await server.start():
        sys.exit(1)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: setattr(server, "running", False))
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers
            pass

    await server.run()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point - runs async_main."""
    try:
        asyncio.run(async_main(argv))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
