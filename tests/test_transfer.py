"""
LAN Hub - File transfer tests.

Chunking, the receive buffer, end-to-end transfers through the in-memory
relay, audience scoping, key-less deferral and dismissal.
"""

import asyncio
import json
import time

import pytest

import lanhub.transfer as transfer_module
from lanhub.constants import STORE_DISMISSED_TRANSFERS, STORE_TRANSFERS
from lanhub.errors import ErrorCode, FileTransferError
from lanhub.models import MessageKind, TransferStatus
from lanhub.protocol import RequestType
from lanhub.transfer import InboundTransfer, chunk_count, split_chunks

PAYLOAD = bytes(range(256)) * 3 + b"tail"  # 772 bytes, 49 chunks of 16


def test_chunk_count():
    assert chunk_count(0, 16) == 1
    assert chunk_count(1, 16) == 1
    assert chunk_count(16, 16) == 1
    assert chunk_count(17, 16) == 2
    assert chunk_count(len(PAYLOAD), 16) == 49


def test_split_chunks():
    assert split_chunks(b"", 16) == [b""]
    chunks = split_chunks(PAYLOAD, 16)
    assert len(chunks) == 49
    assert b"".join(chunks) == PAYLOAD
    assert all(len(c) == 16 for c in chunks[:-1])


def test_buffer_completes_only_with_every_index():
    buffer = InboundTransfer("t1", 3)

    buffer.accept(2, b"c")
    buffer.accept(0, b"a")
    assert not buffer.complete
    with pytest.raises(FileTransferError) as exc:
        buffer.assemble()
    assert exc.value.code == ErrorCode.E604_INCOMPLETE

    buffer.accept(1, b"b")
    assert buffer.complete
    assert buffer.assemble() == b"abc"


def test_buffer_rejects_out_of_range_indices():
    buffer = InboundTransfer("t1", 2)

    for index in (-1, 2, 7):
        with pytest.raises(FileTransferError):
            buffer.accept(index, b"x")

    assert not buffer.complete
    assert buffer.downloaded == set()


def test_duplicate_chunk_is_ignored():
    """Fetching the same index twice never alters the reassembled output."""
    buffer = InboundTransfer("t1", 2)

    assert buffer.accept(0, b"first") is True
    assert buffer.accept(0, b"evil") is False
    buffer.accept(1, b"!")

    assert buffer.assemble() == b"first!"
    assert buffer.assemble() == buffer.assemble()


def test_buffer_needs_at_least_one_chunk():
    with pytest.raises(FileTransferError):
        InboundTransfer("t1", 0)


def test_wanted_respects_batch_and_downloaded():
    buffer = InboundTransfer("t1", 10)
    buffer.accept(1, b"x")

    assert buffer.wanted([5, 1, 0, 2, 3, 42], limit=3) == [0, 2, 3]
    assert buffer.progress == 10


async def keyed_pair(make_peer):
    """An admin and a peer that has received the room key."""
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    await alice.sync.poll()
    await bob.sync.poll()
    assert bob.keys.room_key is not None
    return alice, bob


@pytest.mark.asyncio
async def test_encrypted_transfer_end_to_end(make_peer, relay_state):
    alice, bob = await keyed_pair(make_peer)

    transfer = await alice.transfers.send_bytes("notes.bin", PAYLOAD)

    assert transfer.status == TransferStatus.COMPLETED
    assert transfer.total_chunks == 49
    stored_chunk = relay_state.transfers[transfer.id].chunks[0]
    assert stored_chunk[1]  # nonce present
    assert relay_state.transfers[transfer.id].encrypted is True

    await bob.transfers.receive_tick()

    record = bob.transfers.transfers[transfer.id]
    assert record.status == TransferStatus.COMPLETED
    assert record.progress == 100
    assert bob.transfers.get_artifact(transfer.id) == PAYLOAD
    with open(record.download_path, "rb") as f:
        assert f.read() == PAYLOAD


@pytest.mark.asyncio
async def test_completed_send_posts_file_message(make_peer):
    alice, bob = await keyed_pair(make_peer)

    transfer = await alice.transfers.send_bytes("photo.png", b"png bytes", mime="image/png")

    file_messages = [m for m in alice.sync.messages if m.kind == MessageKind.FILE]
    assert len(file_messages) == 1
    body = json.loads(file_messages[0].display_text)
    assert body == {"transferId": transfer.id, "fileName": "photo.png", "mime": "image/png"}


@pytest.mark.asyncio
async def test_empty_file_transfers(make_peer):
    alice, bob = await keyed_pair(make_peer)

    transfer = await alice.transfers.send_bytes("empty.txt", b"")
    await bob.transfers.receive_tick()

    assert transfer.total_chunks == 1
    assert bob.transfers.get_artifact(transfer.id) == b""


@pytest.mark.asyncio
async def test_receive_is_batched(make_peer):
    alice, bob = await keyed_pair(make_peer)
    bob.transfers.fetch_batch = 5

    transfer = await alice.transfers.send_bytes("notes.bin", PAYLOAD)
    assert await bob.transfers.receive_tick() == 5

    record = bob.transfers.transfers[transfer.id]
    assert record.status == TransferStatus.TRANSFERRING
    assert record.progress == 10

    while record.status != TransferStatus.COMPLETED:
        await bob.transfers.receive_tick()
    assert bob.transfers.get_artifact(transfer.id) == PAYLOAD


@pytest.mark.asyncio
async def test_sender_ignores_own_transfer(make_peer):
    alice, _ = await keyed_pair(make_peer)
    transfer = await alice.transfers.send_bytes("notes.bin", PAYLOAD)

    assert await alice.transfers.receive_tick() == 0
    assert alice.transfers.transfers[transfer.id].receiver_id is None


@pytest.mark.asyncio
async def test_upload_failure_marks_transfer_failed(make_peer):
    alice = await make_peer("alice", is_admin=True)
    alice.transport.online = False

    transfer = await alice.transfers.send_bytes("notes.bin", PAYLOAD)

    assert transfer.status == TransferStatus.FAILED
    assert alice.transfers.transfers[transfer.id].status == TransferStatus.FAILED


@pytest.mark.asyncio
async def test_private_room_transfer_is_scoped(make_peer):
    alice, bob = await keyed_pair(make_peer)
    carol = await make_peer("carol")
    await alice.sync.poll()
    await carol.sync.poll()

    room = await alice.rooms.create_room("Project", participants=[bob.user.id])
    transfer = await alice.transfers.send_bytes("plan.txt", b"the plan", room_id=room.id)

    await bob.transfers.receive_tick()
    await carol.transfers.receive_tick()

    assert bob.transfers.get_artifact(transfer.id) == b"the plan"
    assert transfer.id not in carol.transfers.transfers
    assert RequestType.DOWNLOAD_FILE_CHUNK not in carol.transport.requests


@pytest.mark.asyncio
async def test_encrypted_chunks_wait_for_key(make_peer):
    """Without a room key, encrypted chunks are left unfetched until one arrives."""
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")

    transfer = await alice.transfers.send_bytes("notes.bin", PAYLOAD)
    assert await bob.transfers.receive_tick() == 0
    assert RequestType.DOWNLOAD_FILE_CHUNK not in bob.transport.requests
    assert bob.transfers.transfers[transfer.id].progress == 0

    await alice.sync.poll()
    await bob.sync.poll()
    await bob.transfers.receive_tick()

    assert bob.transfers.get_artifact(transfer.id) == PAYLOAD


@pytest.mark.asyncio
async def test_plaintext_fallback_without_any_key(make_peer, relay_state):
    carol = await make_peer("carol")
    dave = await make_peer("dave")
    assert carol.keys.room_key is None

    transfer = await carol.transfers.send_bytes("readme.txt", b"hello dave")

    assert transfer.status == TransferStatus.COMPLETED
    assert relay_state.transfers[transfer.id].encrypted is False
    await dave.transfers.receive_tick()
    assert dave.transfers.get_artifact(transfer.id) == b"hello dave"


@pytest.mark.asyncio
async def test_dismissed_transfer_is_not_resurrected(make_peer):
    alice, bob = await keyed_pair(make_peer)
    transfer = await alice.transfers.send_bytes("notes.bin", PAYLOAD)
    await bob.transfers.receive_tick()
    assert bob.transfers.transfers[transfer.id].status == TransferStatus.COMPLETED

    assert await bob.transfers.dismiss(transfer.id) is True
    fetched = bob.transport.requests.count(RequestType.DOWNLOAD_FILE_CHUNK)
    await bob.transfers.receive_tick()
    await bob.transfers.receive_tick()

    assert transfer.id not in bob.transfers.transfers
    assert bob.transport.requests.count(RequestType.DOWNLOAD_FILE_CHUNK) == fetched
    assert transfer.id in bob.store.get(STORE_DISMISSED_TRANSFERS)
    assert transfer.id not in [t["id"] for t in bob.store.get(STORE_TRANSFERS, [])]


@pytest.mark.asyncio
async def test_dismiss_during_decrypt_discards_chunk(make_peer, monkeypatch):
    """A dismiss that lands while a chunk is being decrypted wins."""
    alice, bob = await keyed_pair(make_peer)
    transfer = await alice.transfers.send_bytes("notes.bin", b"short payload")
    decrypt = transfer_module.decrypt_bytes

    def slow_decrypt(*args):
        time.sleep(0.3)
        return decrypt(*args)

    monkeypatch.setattr(transfer_module, "decrypt_bytes", slow_decrypt)

    receiving = asyncio.create_task(bob.transfers.receive_tick())
    await asyncio.sleep(0.1)
    await bob.transfers.dismiss(transfer.id)
    await receiving

    assert transfer.id not in bob.transfers.transfers
    assert transfer.id not in [t["id"] for t in bob.store.get(STORE_TRANSFERS, [])]
    assert bob.transfers.get_artifact(transfer.id) is None
    downloads = bob.transfers.downloads_dir
    assert not downloads.exists() or not any(downloads.iterdir())


@pytest.mark.asyncio
async def test_colliding_downloads_get_unique_names(make_peer):
    alice, bob = await keyed_pair(make_peer)
    first = await alice.transfers.send_bytes("same.txt", b"one")
    second = await alice.transfers.send_bytes("same.txt", b"two")

    await bob.transfers.receive_tick()

    paths = {bob.transfers.transfers[t.id].download_path for t in (first, second)}
    assert len(paths) == 2
    assert any(p.endswith("same (1).txt") for p in paths)


@pytest.mark.asyncio
async def test_send_file_reads_from_disk(make_peer, temp_dir):
    alice, bob = await keyed_pair(make_peer)
    source = temp_dir / "report.txt"
    source.write_bytes(b"quarterly numbers")

    transfer = await alice.transfers.send_file(source)
    await bob.transfers.receive_tick()

    assert transfer.file_name == "report.txt"
    assert bob.transfers.get_artifact(transfer.id) == b"quarterly numbers"


@pytest.mark.asyncio
async def test_send_missing_file_raises(make_peer, temp_dir):
    alice = await make_peer("alice", is_admin=True)
    with pytest.raises(FileTransferError):
        await alice.transfers.send_file(temp_dir / "nope.txt")
