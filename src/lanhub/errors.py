"""
LAN Hub - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
LAN Hub. Each error has a unique code for logging and debugging.

Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all LAN Hub error codes."""

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E105_ENVELOPE_INVALID = "E105"

    # Transport Errors (E200-E299)
    E200_TRANSPORT_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_BAD_STATUS = "E203"
    E204_INVALID_RESPONSE = "E204"

    # Protocol Errors (E300-E399)
    E300_PROTOCOL_ERROR = "E300"
    E301_INVALID_BODY = "E301"
    E302_UNKNOWN_TYPE = "E302"
    E303_MISSING_FIELD = "E303"
    E304_MESSAGE_TOO_LARGE = "E304"

    # Room Errors (E500-E599)
    E500_ROOM_ERROR = "E500"
    E504_INVALID_INVITE = "E504"

    # File Transfer Errors (E600-E699)
    E600_FILE_TRANSFER_ERROR = "E600"
    E603_INVALID_CHUNK = "E603"
    E604_INCOMPLETE = "E604"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Storage Errors (E800-E899)
    E800_STORAGE_ERROR = "E800"
    E801_STORAGE_READ_FAILED = "E801"
    E802_STORAGE_WRITE_FAILED = "E802"


class LanHubError(Exception):
    """Base exception class for all LAN Hub errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(LanHubError):
    """Raised for key generation, wrapping, encryption and decryption failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransportError(LanHubError):
    """Raised when a relay round trip fails.

    Covers connection failures, timeouts and non-2xx responses. The HTTP-like
    status of the response, when one was received, is kept in ``status``.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_TRANSPORT_ERROR,
        message: str = "Relay request failed",
        details: Optional[Dict[str, Any]] = None,
        status: Optional[int] = None,
    ):
        super().__init__(code, message, details)
        self.status = status


class ProtocolError(LanHubError):
    """Raised for malformed request bodies and unknown request types.

    The relay maps this to a 4xx response; ``status`` carries the code.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_PROTOCOL_ERROR,
        message: str = "Malformed request",
        details: Optional[Dict[str, Any]] = None,
        status: int = 400,
    ):
        super().__init__(code, message, details)
        self.status = status


class RoomError(LanHubError):
    """Raised for room lookup and invitation-code failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_ROOM_ERROR,
        message: str = "Room operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class FileTransferError(LanHubError):
    """Raised for chunking, upload and reassembly failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_FILE_TRANSFER_ERROR,
        message: str = "File transfer operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(LanHubError):
    """Raised for configuration loading, parsing and saving failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class StorageError(LanHubError):
    """Raised when the local store cannot be read or written."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_STORAGE_ERROR,
        message: str = "Local storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
