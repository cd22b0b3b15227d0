"""
LAN Hub - Chunked file transfer.

Files travel through the relay as fixed-size chunks, each encrypted under
the room key with its own nonce. The sender announces the transfer, then
uploads chunks in order. Receivers poll for announcements addressed to
them, fetch a bounded batch of available chunks per cycle into an indexed
buffer, and reassemble the file once every index has arrived.

Transfer lifecycle:
    sender:   pending -> transferring -> completed | failed
    receiver: transferring -> completed
"""

import asyncio
import json
import logging
import math
import mimetypes
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import aiofiles

from .constants import (
    CHUNK_FETCH_BATCH,
    FILE_CHUNK_SIZE,
    STORE_DISMISSED_TRANSFERS,
    STORE_TRANSFERS,
    TRANSFER_POLL_INTERVAL,
)
from .crypto import decrypt_bytes, encrypt_bytes
from .errors import (
    CryptoError,
    ErrorCode,
    FileTransferError,
    LanHubError,
    ProtocolError,
    TransportError,
)
from .models import (
    BROADCAST,
    Audience,
    MessageKind,
    Transfer,
    TransferAnnouncement,
    TransferStatus,
    audience_to_wire,
    scoped,
)
from .protocol import RequestType
from .sync import SyncEvent
from .utils import b64decode, b64encode, generate_id, now_ms, sanitize_filename

logger = logging.getLogger(__name__)


def chunk_count(file_size: int, chunk_size: int = FILE_CHUNK_SIZE) -> int:
    """Number of chunks for a file; at least 1, even for an empty file."""
    return max(1, math.ceil(file_size / chunk_size))


def split_chunks(data: bytes, chunk_size: int = FILE_CHUNK_SIZE) -> List[bytes]:
    """Split data into ``chunk_count`` consecutive slices."""
    return [
        data[i * chunk_size:(i + 1) * chunk_size]
        for i in range(chunk_count(len(data), chunk_size))
    ]


class InboundTransfer:
    """
    Receive buffer for one transfer.

    Each index in [0, total_chunks) has one slot. ``downloaded`` records the
    filled slots so that a repeated index is ignored.
    """

    def __init__(self, transfer_id: str, total_chunks: int):
        if total_chunks < 1:
            raise FileTransferError(
                ErrorCode.E603_INVALID_CHUNK,
                "A transfer has at least one chunk",
                {"transfer_id": transfer_id, "total_chunks": total_chunks},
            )
        self.transfer_id = transfer_id
        self.total_chunks = total_chunks
        self.slots: List[Optional[bytes]] = [None] * total_chunks
        self.downloaded: Set[int] = set()

    def accept(self, index: int, data: bytes) -> bool:
        """
        Fill one slot.

        Returns:
            False if the index was already filled

        Raises:
            FileTransferError: If the index is outside [0, total_chunks)
        """
        if not 0 <= index < self.total_chunks:
            raise FileTransferError(
                ErrorCode.E603_INVALID_CHUNK,
                f"Chunk index {index} out of range",
                {"transfer_id": self.transfer_id, "total_chunks": self.total_chunks},
            )
        if index in self.downloaded:
            return False
        self.slots[index] = data
        self.downloaded.add(index)
        return True

    def wanted(self, available: Iterable[int], limit: int) -> List[int]:
        """Up to ``limit`` available in-range indices not yet downloaded, in order."""
        wanted = []
        for index in sorted(set(available)):
            if len(wanted) >= limit:
                break
            if 0 <= index < self.total_chunks and index not in self.downloaded:
                wanted.append(index)
        return wanted

    @property
    def complete(self) -> bool:
        return len(self.downloaded) == self.total_chunks

    @property
    def progress(self) -> int:
        return math.floor(len(self.downloaded) / self.total_chunks * 100)

    def assemble(self) -> bytes:
        """
        Concatenate all slots in index order.

        Raises:
            FileTransferError: If any slot is still empty
        """
        if not self.complete:
            raise FileTransferError(
                ErrorCode.E604_INCOMPLETE,
                "Transfer is not complete",
                {"transfer_id": self.transfer_id, "received": len(self.downloaded)},
            )
        return b"".join(self.slots)


class TransferEngine:
    """
    Send and receive files for one peer.

    Attributes:
        transfers: Local transfer records keyed by id
        inbound: Receive buffers keyed by transfer id
        artifacts: Reassembled file contents keyed by transfer id
        dismissed: Transfer ids the user dismissed as receiver
    """

    def __init__(
        self,
        sync,
        keys,
        store,
        downloads_dir: Path,
        chunk_size: int = FILE_CHUNK_SIZE,
        fetch_batch: int = CHUNK_FETCH_BATCH,
        poll_interval: float = TRANSFER_POLL_INTERVAL,
    ):
        self.sync = sync
        self.keys = keys
        self.store = store
        self.downloads_dir = Path(downloads_dir)
        self.chunk_size = chunk_size
        self.fetch_batch = fetch_batch
        self.poll_interval = poll_interval

        self.transfers: Dict[str, Transfer] = {}
        for data in store.get(STORE_TRANSFERS, []):
            try:
                transfer = Transfer.from_dict(data)
            except (KeyError, TypeError, ValueError, ProtocolError) as e:
                logger.debug(f"Skipping malformed stored transfer: {e}")
                continue
            self.transfers[transfer.id] = transfer

        self.dismissed: Set[str] = set(store.get(STORE_DISMISSED_TRANSFERS, []))
        self.inbound: Dict[str, InboundTransfer] = {}
        self.artifacts: Dict[str, bytes] = {}
        self.running = False

    @property
    def user(self):
        return self.sync.user

    async def _save(self, transfer: Transfer) -> None:
        if transfer.id in self.dismissed:
            return
        self.transfers[transfer.id] = transfer
        await self.store.set(STORE_TRANSFERS, [t.to_dict() for t in self.transfers.values()])
        await self.sync.notify(SyncEvent.TRANSFERS, transfer)

    def audience_for(self, room_id: Optional[str]) -> Audience:
        """A private room scopes a transfer to its participants; anything else is broadcast."""
        if room_id is None:
            return BROADCAST
        room = self.sync.rooms.get(room_id)
        if room is None or room.is_public:
            return BROADCAST
        return scoped(room.participants)

    # Send path

    async def send_file(self, path: Path, room_id: Optional[str] = None) -> Transfer:
        """
        Read a file from disk and send it.

        Raises:
            FileTransferError: If the file cannot be read
        """
        path = Path(path)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise FileTransferError(
                ErrorCode.E600_FILE_TRANSFER_ERROR,
                f"Cannot read {path}: {e}",
                {"path": str(path)},
            )

        mime = mimetypes.guess_type(path.name)[0] or ""
        return await self.send_bytes(path.name, data, room_id=room_id, mime=mime)

    async def send_bytes(
        self,
        file_name: str,
        data: bytes,
        room_id: Optional[str] = None,
        mime: str = "",
    ) -> Transfer:
        """
        Announce and upload one file.

        Without an active room key chunks go out as plain base64 with an
        empty nonce. Any failed request marks the transfer failed and stops.
        On success a file message referencing the transfer is posted to the
        same channel.

        Returns:
            The local transfer record in its final state
        """
        room_key = self.keys.get_room_key()
        total_chunks = chunk_count(len(data), self.chunk_size)
        audience = self.audience_for(room_id)

        transfer = Transfer(
            id=generate_id(),
            file_name=file_name,
            file_size=len(data),
            sender_id=self.user.id,
            sender_name=self.user.display_name,
            total_chunks=total_chunks,
            audience=audience,
            status=TransferStatus.PENDING,
            timestamp=now_ms(),
        )
        await self._save(transfer)

        if room_key is None:
            logger.warning(f"No room key: sending {file_name} without encryption")

        announcement = {
            "id": transfer.id,
            "senderId": transfer.sender_id,
            "senderName": transfer.sender_name,
            "fileName": file_name,
            "fileSize": transfer.file_size,
            "totalChunks": total_chunks,
            "encrypted": room_key is not None,
        }
        recipients = audience_to_wire(audience)
        if recipients is not None:
            announcement["recipients"] = recipients

        try:
            await self.sync.transport.request(RequestType.INIT_FILE_TRANSFER, announcement)
        except TransportError as e:
            logger.warning(f"Transfer {transfer.id} announcement failed: {e.message}")
            transfer.status = TransferStatus.FAILED
            await self._save(transfer)
            return transfer

        for index, chunk in enumerate(split_chunks(data, self.chunk_size)):
            try:
                if room_key is not None:
                    payload_data, nonce = await asyncio.to_thread(encrypt_bytes, room_key, chunk)
                else:
                    payload_data, nonce = b64encode(chunk), ""
                await self.sync.transport.request(
                    RequestType.UPLOAD_CHUNK,
                    {
                        "transferId": transfer.id,
                        "index": index,
                        "totalChunks": total_chunks,
                        "data": payload_data,
                        "nonce": nonce,
                    },
                )
            except (TransportError, CryptoError) as e:
                logger.warning(f"Transfer {transfer.id} failed at chunk {index}: {e.message}")
                transfer.status = TransferStatus.FAILED
                await self._save(transfer)
                return transfer

            transfer.status = TransferStatus.TRANSFERRING
            transfer.progress = math.floor((index + 1) / total_chunks * 100)
            await self._save(transfer)

        transfer.status = TransferStatus.COMPLETED
        transfer.progress = 100
        await self._save(transfer)
        logger.info(f"Sent {file_name} ({total_chunks} chunks) as transfer {transfer.id}")

        body = json.dumps({"transferId": transfer.id, "fileName": file_name, "mime": mime})
        await self.sync.send_message(body, room_id=room_id, kind=MessageKind.FILE)
        return transfer

    # Receive path

    async def receive_tick(self) -> int:
        """
        One receive cycle over every announced transfer.

        Returns:
            Number of chunks stored during this cycle

        Raises:
            TransportError: If the transfer list cannot be fetched
        """
        response = await self.sync.transport.request(
            RequestType.LIST_FILE_TRANSFERS, {"userId": self.user.id}
        )

        stored = 0
        for item in response.get("transfers") or []:
            try:
                announcement = TransferAnnouncement.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed transfer announcement: {e}")
                continue
            stored += await self._receive(announcement)
        return stored

    async def _receive(self, announcement: TransferAnnouncement) -> int:
        transfer_id = announcement.id
        if transfer_id in self.dismissed or announcement.sender_id == self.user.id:
            return 0

        record = self.transfers.get(transfer_id)
        if record is not None and record.status == TransferStatus.COMPLETED and transfer_id not in self.inbound:
            return 0

        buffer = self.inbound.get(transfer_id)
        if buffer is None:
            try:
                buffer = InboundTransfer(transfer_id, announcement.total_chunks)
            except FileTransferError as e:
                logger.warning(f"Ignoring transfer {transfer_id}: {e.message}")
                return 0
            self.inbound[transfer_id] = buffer

        if record is None:
            record = Transfer(
                id=transfer_id,
                file_name=announcement.file_name,
                file_size=announcement.file_size,
                sender_id=announcement.sender_id,
                sender_name=announcement.sender_name,
                total_chunks=announcement.total_chunks,
                status=TransferStatus.TRANSFERRING,
                receiver_id=self.user.id,
            )
            await self._save(record)
            logger.info(f"Receiving {record.file_name} from {record.sender_name}")

        if buffer.complete:
            return 0

        room_key = self.keys.get_room_key()
        if announcement.encrypted and room_key is None:
            return 0

        stored = 0
        for index in buffer.wanted(announcement.available_chunks, self.fetch_batch):
            try:
                chunk = await self.sync.transport.request(
                    RequestType.DOWNLOAD_FILE_CHUNK,
                    {"userId": self.user.id, "transferId": transfer_id, "index": index},
                )
            except TransportError as e:
                logger.debug(f"Chunk {index} of {transfer_id} not fetched: {e.message}")
                continue

            if transfer_id in self.dismissed:
                return stored

            nonce = chunk.get("nonce") or ""
            try:
                if nonce:
                    if room_key is None:
                        continue
                    data = await asyncio.to_thread(decrypt_bytes, room_key, chunk.get("data", ""), nonce)
                else:
                    data = b64decode(chunk.get("data", ""))
            except (CryptoError, ValueError) as e:
                logger.warning(f"Chunk {index} of {transfer_id} unreadable, deferring: {e}")
                continue

            if transfer_id in self.dismissed:
                return stored

            if not buffer.accept(index, data):
                continue
            stored += 1

            record.progress = buffer.progress
            record.status = TransferStatus.COMPLETED if buffer.complete else TransferStatus.TRANSFERRING
            await self._save(record)

            if buffer.complete:
                await self._complete(record, buffer)
                break

        return stored

    async def _complete(self, record: Transfer, buffer: InboundTransfer) -> None:
        if record.id in self.dismissed:
            return
        data = buffer.assemble()
        self.artifacts[record.id] = data

        try:
            path = await self._write_artifact(record.file_name, data)
        except OSError as e:
            logger.error(f"Cannot write {record.file_name} to downloads: {e}")
        else:
            record.download_path = str(path)

        record.status = TransferStatus.COMPLETED
        record.progress = 100
        await self._save(record)
        logger.info(f"Received {record.file_name} ({len(data)} bytes)")

    async def _write_artifact(self, file_name: str, data: bytes) -> Path:
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        name = sanitize_filename(file_name)
        path = self.downloads_dir / name
        counter = 1
        while path.exists():
            stem, suffix = Path(name).stem, Path(name).suffix
            path = self.downloads_dir / f"{stem} ({counter}){suffix}"
            counter += 1

        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        return path

    def get_artifact(self, transfer_id: str) -> Optional[bytes]:
        return self.artifacts.get(transfer_id)

    async def run(self) -> None:
        """Receive loop; the next cycle is scheduled only after the current one ends."""
        self.running = True
        while self.running:
            try:
                await self.receive_tick()
            except TransportError as e:
                logger.debug(f"Transfer poll failed: {e.message}")
            except LanHubError as e:
                logger.error(f"Transfer cycle failed: {e}", exc_info=True)
            except Exception as e:
                logger.error(f"Unexpected error in transfer cycle: {e}", exc_info=True)

            if self.running:
                await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self.running = False

    async def dismiss(self, transfer_id: str) -> bool:
        """
        Remove a transfer from the local list.

        As receiver the id is also recorded as dismissed, so it is never
        fetched again. The relay and the sender are not told.
        """
        record = self.transfers.pop(transfer_id, None)
        self.inbound.pop(transfer_id, None)

        is_receiver = record is None or record.receiver_id == self.user.id
        if is_receiver and transfer_id not in self.dismissed:
            self.dismissed.add(transfer_id)
            await self.store.set(STORE_DISMISSED_TRANSFERS, sorted(self.dismissed))

        await self.store.remove_item(STORE_TRANSFERS, transfer_id)
        await self.sync.notify(SyncEvent.TRANSFERS, None)
        return record is not None
