"""
LAN Hub - Key exchange tests.

Room key generation, envelope distribution through the relay, the send
ledger, late key delivery and the passphrase fallback.
"""

import pytest

from lanhub.constants import ENCRYPTED_PLACEHOLDER, STORE_IDENTITY_KEYS
from lanhub.crypto import IdentityKeyPair, generate_room_key, wrap_room_key
from lanhub.peer import Peer
from lanhub.protocol import RequestType


def key_updates_sent(peer):
    return peer.transport.requests.count(RequestType.KEY_UPDATE)


@pytest.mark.asyncio
async def test_admin_generates_room_key(make_peer):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")

    assert alice.keys.room_key is not None
    assert bob.keys.room_key is None
    assert bob.user.is_admin is False


@pytest.mark.asyncio
async def test_identity_published_on_registration(make_peer, relay_state):
    bob = await make_peer("bob")

    published = relay_state.users[bob.user.id].public_key
    assert published == bob.keys.identity.public_key_b64


@pytest.mark.asyncio
async def test_envelope_delivered_through_relay(make_peer):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")

    await alice.sync.poll()
    await bob.sync.poll()

    assert bob.keys.room_key == alice.keys.room_key


@pytest.mark.asyncio
async def test_each_peer_gets_its_own_envelope(make_peer, relay_state):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    carol = await make_peer("carol")

    await alice.sync.poll()
    bob_env = relay_state.key_updates[bob.user.id][0]["envelope"]
    carol_env = relay_state.key_updates[carol.user.id][0]["envelope"]
    assert bob_env["epk"] != carol_env["epk"]
    assert bob_env["salt"] != carol_env["salt"]
    assert bob_env["nonce"] != carol_env["nonce"]

    await bob.sync.poll()
    await carol.sync.poll()
    assert bob.keys.room_key == carol.keys.room_key == alice.keys.room_key


@pytest.mark.asyncio
async def test_ledger_prevents_resending(make_peer):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")

    await alice.sync.poll()
    await alice.sync.poll()
    await alice.sync.poll()

    assert key_updates_sent(alice) == 1
    assert alice.keys.ledger == {(alice.keys.room_key.generation, bob.user.id)}


@pytest.mark.asyncio
async def test_rotation_rearms_distribution(make_peer):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    await alice.sync.poll()
    await bob.sync.poll()
    first = bob.keys.room_key

    rotated = await alice.keys.rotate_room_key()
    await alice.sync.poll()
    await bob.sync.poll()

    assert key_updates_sent(alice) == 2
    assert bob.keys.room_key == rotated
    assert bob.keys.room_key != first


@pytest.mark.asyncio
async def test_non_admin_cannot_rotate_or_distribute(make_peer):
    await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    bob.keys.room_key = generate_room_key()

    assert await bob.keys.rotate_room_key() is None
    await bob.sync.poll()
    assert key_updates_sent(bob) == 0


@pytest.mark.asyncio
async def test_failed_delivery_is_retried(make_peer):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    await alice.sync.poll()
    presence = list(alice.sync.presence)
    alice.keys.ledger.clear()

    alice.transport.online = False
    assert await alice.keys.distribute(presence) == 0
    assert alice.keys.ledger == set()

    alice.transport.online = True
    assert await alice.keys.distribute(presence) == 1
    assert (alice.keys.room_key.generation, bob.user.id) in alice.keys.ledger


@pytest.mark.asyncio
async def test_peer_without_public_key_is_skipped(make_peer, relay_state):
    alice = await make_peer("alice", is_admin=True)
    bob = await make_peer("bob")
    relay_state.users[bob.user.id].public_key = None

    await alice.sync.poll()

    assert key_updates_sent(alice) == 0
    assert alice.keys.ledger == set()


@pytest.mark.asyncio
async def test_bad_envelope_is_dropped(make_peer):
    bob = await make_peer("bob")
    stranger = IdentityKeyPair()
    envelope = wrap_room_key(generate_room_key(), stranger.public_key_b64, "mallory")

    assert await bob.keys.consume_envelopes([envelope]) == 0
    assert bob.keys.room_key is None


@pytest.mark.asyncio
async def test_late_key_delivery_decrypts_held_messages(make_peer):
    """
    Messages held before the key arrives decrypt once it does; ids and
    sequence numbers do not change, and a message under an older key stays
    opaque.
    """
    alice = await make_peer("alice", is_admin=True)
    await alice.sync.send_message("under the old key")
    await alice.keys.rotate_room_key()
    for i in range(3):
        await alice.sync.send_message(f"secret {i}")

    bob = await make_peer("bob")
    assert [m.display_text for m in bob.sync.messages] == [ENCRYPTED_PLACEHOLDER] * 4
    before = [(m.id, m.seq) for m in bob.sync.messages]

    await alice.sync.poll()
    await bob.sync.poll()

    assert [(m.id, m.seq) for m in bob.sync.messages] == before
    assert [m.display_text for m in bob.sync.messages] == [
        ENCRYPTED_PLACEHOLDER, "secret 0", "secret 1", "secret 2",
    ]


@pytest.mark.asyncio
async def test_keys_persist_across_restart(make_peer):
    alice = await make_peer("alice", is_admin=True)
    fingerprint = alice.keys.fingerprint
    room_key = alice.keys.room_key
    assert alice.store.get(STORE_IDENTITY_KEYS)

    restarted = Peer(alice.data_dir, alice.config, alice.transport)
    await restarted.connect()

    assert restarted.user.id == alice.user.id
    assert restarted.keys.fingerprint == fingerprint
    assert restarted.keys.room_key == room_key


@pytest.mark.slow
@pytest.mark.asyncio
async def test_passphrase_fallback(make_peer):
    """Peers sharing a passphrase decrypt each other without any envelope."""
    bob = await make_peer("bob", passphrase="lan party")
    carol = await make_peer("carol", passphrase="lan party")

    assert bob.keys.room_key is not None
    assert bob.keys.room_key == carol.keys.room_key
