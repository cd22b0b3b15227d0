"""
Pytest configuration and fixtures for LAN Hub tests.

Provides a temporary data directory, an in-memory relay and a factory that
builds fully wired peers talking to that relay in-process.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from lanhub.config import Config
from lanhub.constants import CONFIG_FILENAME
from lanhub.peer import Peer
from lanhub.relay import RelayState
from lanhub.transport import LocalTransport


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="lanhub_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def relay_state() -> RelayState:
    """A fresh in-memory relay."""
    return RelayState()


@pytest.fixture
def local_transport(relay_state: RelayState) -> LocalTransport:
    """Transport answering from ``relay_state`` without sockets."""
    return LocalTransport(relay_state)


@pytest.fixture
def make_peer(temp_dir: Path, relay_state: RelayState):
    """
    Factory for connected peers sharing ``relay_state``.

    Each peer gets its own data directory and its own LocalTransport, is
    registered as a new local account, optionally flagged admin, and is
    connected (keys initialized, registered, state bootstrapped). The
    background loops are not started; tests drive ``sync.poll`` and
    ``transfers.receive_tick`` directly.
    """

    async def factory(username: str, is_admin: bool = False, passphrase: str = "") -> Peer:
        data_dir = temp_dir / username
        config = Config(data_dir / CONFIG_FILENAME)
        config.set("crypto", "passphrase", passphrase)
        config.set("transfer", "chunk_size", 16)
        config.set("transfer", "fetch_batch", 100)

        peer = Peer(data_dir, config, LocalTransport(relay_state))
        await peer.register_account(username, username.title())
        if is_admin:
            await peer.set_admin(username, True)
        await peer.connect()
        return peer

    return factory


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
