"""
LAN Hub - Global Constants and Configuration Values

This module defines the constants used throughout LAN Hub. Reference
values for polling, chunking and crypto live here; anything an operator
may want to tune is also exposed through the configuration file.

Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "LAN Hub"

# Network Constants
DEFAULT_RELAY_PORT = 8765
DEFAULT_HOST = "0.0.0.0"
LOCALHOST = "127.0.0.1"
REQUEST_TIMEOUT = 10  # seconds per relay round trip
MAX_REQUEST_SIZE = 8 * 1024 * 1024  # 8 MB per framed request line

# Synchronization
POLL_INTERVAL = 2.0  # seconds between heartbeats
PRESENCE_TIMEOUT = 35  # seconds before the relay prunes a silent peer
PRESENCE_PRUNE_INTERVAL = 30  # seconds between relay housekeeping passes
MESSAGE_HISTORY_LIMIT = 200  # messages retained by the relay

# File Transfer Constants
FILE_CHUNK_SIZE = 64 * 1024  # 64 KiB chunks
CHUNK_FETCH_BATCH = 5  # chunks requested per transfer per receive tick
TRANSFER_POLL_INTERVAL = 2.0  # seconds between receive cycles

# Cryptography Constants
KEY_SIZE = 32  # 256-bit AES room key, X25519 keys
NONCE_SIZE = 12  # 96-bit AES-GCM nonce
SALT_SIZE = 16  # 128-bit HKDF salt per envelope
ROOM_KEY_ALGORITHM = "aes-256-gcm"
ROOM_KEY_INFO = b"lanhub-roomkey-v1"
PASSPHRASE_SALT = b"lanhub-passphrase-salt-v1"
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# Rendering
ENCRYPTED_PLACEHOLDER = "[Encrypted message]"

# Invitation codes
INVITE_CODE_VERSION = 1

# Local storage keys
STORE_CURRENT_USER = "current_user"
STORE_USERS = "users"
STORE_IDENTITY_KEYS = "identity_keys"
STORE_ROOM_KEY = "room_key"
STORE_MESSAGES = "messages"
STORE_ROOMS = "chat_rooms"
STORE_DEVICES = "devices"
STORE_TRANSFERS = "file_transfers"
STORE_DISMISSED_TRANSFERS = "dismissed_transfers"
STORE_ACTIVITY_LOG = "activity_logs"
ACTIVITY_LOG_LIMIT = 100

# File Paths
DEFAULT_DATA_DIR = "~/.lanhub"
CONFIG_FILENAME = "config.toml"
DOWNLOADS_DIR = "downloads"
LOGS_DIR = "logs"
LOG_FILENAME = "lanhub.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
