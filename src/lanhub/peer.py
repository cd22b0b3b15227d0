"""
LAN Hub - Peer process.

Wires one peer together: local account registry, local store, relay
transport, synchronizer, key exchange, transfer engine and room manager,
and runs the two background loops (sync poll and transfer receive).
"""

import asyncio
import logging
import socket
from pathlib import Path
from typing import List, Optional

from .config import Config
from .constants import (
    ACTIVITY_LOG_LIMIT,
    CHUNK_FETCH_BATCH,
    CONFIG_FILENAME,
    DEFAULT_HOST,
    DOWNLOADS_DIR,
    FILE_CHUNK_SIZE,
    LOCALHOST,
    POLL_INTERVAL,
    STORE_ACTIVITY_LOG,
    STORE_CURRENT_USER,
    STORE_USERS,
    TRANSFER_POLL_INTERVAL,
)
from .keyexchange import KeyExchangeEngine
from .models import Device, PeerIdentity, PresenceStatus
from .rooms import RoomManager
from .storage import LocalStore
from .sync import Synchronizer
from .transfer import TransferEngine
from .transport import RelayClient, Transport
from .utils import generate_id, now_ms

logger = logging.getLogger(__name__)


class Peer:
    """
    One LAN Hub peer.

    Attributes:
        data_dir: Directory holding the local store and downloads
        user: The logged-in identity, if any
        sync: Synchronizer (after ``start``)
        keys: Key-exchange engine (after ``start``)
        transfers: Transfer engine (after ``start``)
        rooms: Room manager (after ``start``)
    """

    def __init__(self, data_dir: Path, config: Optional[Config] = None, transport: Optional[Transport] = None):
        self.data_dir = Path(data_dir)
        self.config = config or Config(self.data_dir / CONFIG_FILENAME)
        self.store = LocalStore(self.data_dir / "store")
        host = self.config.get("relay", "host", LOCALHOST)
        if host == DEFAULT_HOST:
            host = LOCALHOST
        self.transport = transport or RelayClient(
            host,
            self.config.get("relay", "port"),
            self.config.get("relay", "timeout"),
        )

        stored = self.store.get(STORE_CURRENT_USER)
        self.user: Optional[PeerIdentity] = PeerIdentity.from_dict(stored) if stored else None

        self.sync: Optional[Synchronizer] = None
        self.keys: Optional[KeyExchangeEngine] = None
        self.transfers: Optional[TransferEngine] = None
        self.rooms: Optional[RoomManager] = None
        self._tasks: List[asyncio.Task] = []

    # Local accounts

    def accounts(self) -> List[PeerIdentity]:
        return [PeerIdentity.from_dict(u) for u in self.store.get(STORE_USERS, [])]

    def find_account(self, username: str) -> Optional[PeerIdentity]:
        for account in self.accounts():
            if account.username == username:
                return account
        return None

    async def register_account(self, username: str, display_name: str = "") -> Optional[PeerIdentity]:
        """
        Create a local account and log in as it.

        New accounts are never admins. Returns None if the username exists.
        """
        username = username.strip()
        if not username or self.find_account(username) is not None:
            return None

        user = PeerIdentity(
            id=generate_id(),
            username=username,
            display_name=display_name.strip() or username,
            is_admin=False,
        )
        await self.store.append(STORE_USERS, user.to_dict(), unique_by="username")
        await self._set_current_user(user)
        await self.log_activity("login", f"{user.display_name} registered and logged in")
        return user

    async def login(self, username: str) -> bool:
        account = self.find_account(username)
        if account is None:
            return False

        account.status = PresenceStatus.ONLINE
        account.last_seen = now_ms()
        await self.store.update_item(STORE_USERS, account.id, account.to_dict())
        await self._set_current_user(account)
        await self.log_activity("login", f"{account.display_name} logged in")
        return True

    async def set_admin(self, username: str, is_admin: bool = True) -> bool:
        """Operator action on the local account registry."""
        account = self.find_account(username)
        if account is None:
            return False

        account.is_admin = is_admin
        await self.store.update_item(STORE_USERS, account.id, {"isAdmin": is_admin})
        if self.user is not None and self.user.id == account.id:
            self.user.is_admin = is_admin
            await self.store.set(STORE_CURRENT_USER, self.user.to_dict())
        logger.info(f"Admin flag for {username} set to {is_admin}")
        return True

    async def _set_current_user(self, user: PeerIdentity) -> None:
        self.user = user
        await self.store.set(STORE_CURRENT_USER, user.to_dict())

    async def log_activity(self, kind: str, description: str) -> None:
        if self.user is None:
            return
        entry = {
            "id": generate_id(),
            "type": kind,
            "userId": self.user.id,
            "userName": self.user.display_name,
            "description": description,
            "timestamp": now_ms(),
        }
        await self.store.append(STORE_ACTIVITY_LOG, entry, limit=ACTIVITY_LOG_LIMIT)

    def activity(self) -> List[dict]:
        return self.store.get(STORE_ACTIVITY_LOG, [])

    # Lifecycle

    def _local_device(self) -> Device:
        try:
            address = socket.gethostbyname(socket.gethostname())
        except OSError:
            address = LOCALHOST
        return Device(
            id=f"device-{self.user.id}",
            user_id=self.user.id,
            name=f"{self.user.display_name}'s Device",
            kind="desktop",
            ip_address=address,
        )

    def build(self) -> None:
        """Create the components for the logged-in user."""
        if self.user is None:
            raise RuntimeError("No user is logged in")

        self.sync = Synchronizer(
            self.transport,
            self.store,
            self.user,
            poll_interval=self.config.get("sync", "poll_interval", POLL_INTERVAL),
        )
        self.keys = KeyExchangeEngine(
            self.sync, self.store, passphrase=self.config.get("crypto", "passphrase", "")
        )
        downloads = Path(self.config.get("transfer", "downloads_dir", DOWNLOADS_DIR)).expanduser()
        if not downloads.is_absolute():
            downloads = self.data_dir / downloads
        self.transfers = TransferEngine(
            self.sync,
            self.keys,
            self.store,
            downloads,
            chunk_size=self.config.get("transfer", "chunk_size", FILE_CHUNK_SIZE),
            fetch_batch=self.config.get("transfer", "fetch_batch", CHUNK_FETCH_BATCH),
            poll_interval=self.config.get("transfer", "poll_interval", TRANSFER_POLL_INTERVAL),
        )
        self.rooms = RoomManager(self.sync)
        self.sync.add_poll_handler(self._ensure_registered)

    async def connect(self) -> None:
        """Initialize keys and announce this peer to the relay without starting loops."""
        if self.sync is None:
            self.build()
        await self.keys.initialize()
        if await self.sync.register():
            await self.sync.register_device(self._local_device())
        await self.sync.bootstrap()

    async def start(self) -> None:
        """Connect, then run the sync and transfer loops in the background."""
        await self.connect()
        self._tasks = [
            asyncio.create_task(self.sync.run()),
            asyncio.create_task(self.transfers.run()),
        ]
        logger.info(f"Peer {self.user.username} started")

    async def _ensure_registered(self, result) -> None:
        # A restarted relay has forgotten us
        if not any(peer.id == self.user.id for peer in result.presence):
            logger.info("Not present on relay, registering again")
            if await self.sync.register():
                await self.sync.register_device(self._local_device())

    async def stop(self) -> None:
        """Stop both loops and unregister from the relay."""
        if self.sync is not None:
            self.sync.stop()
        if self.transfers is not None:
            self.transfers.stop()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self.sync is not None:
            await self.sync.unregister()
        logger.info("Peer stopped")

    async def logout(self) -> None:
        if self.user is None:
            return
        await self.stop()
        await self.store.update_item(
            STORE_USERS, self.user.id, {"status": PresenceStatus.OFFLINE.value, "lastSeen": now_ms()}
        )
        await self.log_activity("logout", f"{self.user.display_name} logged out")
        await self.store.delete(STORE_CURRENT_USER)
        self.user = None
        self.sync = self.keys = self.transfers = self.rooms = None
