"""
LAN Hub - Relay-mediated LAN messaging

A small-team chat and file sharing system: peers poll a volatile relay for
presence, messages, room changes and key envelopes. Message bodies and file
chunks are end-to-end encrypted under a shared room key.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    CryptoError,
    ErrorCode,
    FileTransferError,
    LanHubError,
    ProtocolError,
    RoomError,
    StorageError,
    TransportError,
)
from .peer import Peer
from .relay import RelayServer, RelayState

__all__ = [
    "APP_NAME",
    "VERSION",
    "Config",
    "ConfigError",
    "CryptoError",
    "ErrorCode",
    "FileTransferError",
    "LanHubError",
    "Peer",
    "ProtocolError",
    "RelayServer",
    "RelayState",
    "RoomError",
    "StorageError",
    "TransportError",
    "__license__",
    "__version__",
]
