"""
LAN Hub - Utility functions.

Provides logging setup, identifier generation, timestamp formatting and
small encoding helpers shared by the core components.
"""

import base64
import logging
import secrets
import string
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def setup_logging(config, data_dir: Optional[Path] = None) -> None:
    """
    Configure the ``lanhub`` logger from the ``[logging]`` config section.

    Installs a console handler and, when enabled and a data directory is
    given, a rotating file handler under ``<data_dir>/logs``.

    Args:
        config: Config instance
        data_dir: Data directory for the log file (optional)
    """
    root = logging.getLogger("lanhub")
    level_name = str(config.get("logging", "level", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.get("logging", "file_logging", True) and data_dir is not None:
        logs_dir = Path(data_dir) / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def generate_id() -> str:
    """
    Generate a record identifier: millisecond timestamp plus a random suffix.

    Format: ``<ms>-<9 base36 chars>`` (e.g. ``1717171717171-k3j9x0a1b``)
    """
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{now_ms()}-{suffix}"


def format_timestamp(timestamp_ms: Optional[int], format_str: str = "%H:%M:%S") -> str:
    """
    Format a millisecond timestamp for display.

    Returns an empty string when the timestamp is missing or invalid.
    """
    if timestamp_ms is None:
        return ""
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000).strftime(format_str)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.debug(f"Failed to format timestamp '{timestamp_ms}': {e}")
        return ""


def format_size(num_bytes: int) -> str:
    """Human-readable byte count (B, KB, MB, GB)."""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a filename by removing invalid characters.

    Args:
        filename: Filename to sanitize

    Returns:
        Sanitized filename
    """
    invalid_chars = '<>:"/\\|?*'
    for char in invalid_chars:
        filename = filename.replace(char, "_")

    filename = filename.strip(". ")

    if not filename:
        filename = "unnamed"

    return filename


def b64encode(data: bytes) -> str:
    """Standard base64 text for binary payloads on the wire."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Inverse of :func:`b64encode`; raises ``binascii.Error`` on bad input."""
    return base64.b64decode(text.encode("ascii"), validate=True)


def b64url_encode(text: str) -> str:
    """URL-safe base64 of UTF-8 text without padding."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def b64url_decode(code: str) -> str:
    """
    Decode URL-safe base64 text, restoring padding.

    Returns an empty string when the input is not valid base64url/UTF-8.
    """
    try:
        padded = code + "=" * (-len(code) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError):
        return ""
