"""
LAN Hub - Durable local storage.

A small key-value store holding one JSON document per key under the data
directory. Reads are served from an in-memory cache populated on first
access; writes go to a temporary file that atomically replaces the
previous document.

Writes are read-modify-write then overwrite: the last writer wins.
"""

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from .errors import ErrorCode, StorageError

logger = logging.getLogger(__name__)


class LocalStore:
    """JSON document store keyed by name.

    Attributes:
        data_dir: Directory holding one ``<key>.json`` file per key
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def _load(self, key: str) -> Any:
        if key in self._cache:
            return self._cache[key]

        path = self._path(key)
        value = None
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    value = json.load(f)
            except OSError as e:
                logger.error(f"Failed to read store key '{key}': {e}")
                raise StorageError(
                    ErrorCode.E801_STORAGE_READ_FAILED,
                    f"Cannot read '{key}': {e}",
                    {"path": str(path)},
                ) from e
            except json.JSONDecodeError as e:
                logger.error(f"Corrupted store file for '{key}': {e}")
                logger.warning(f"Starting with empty '{key}' due to corrupted file")

        self._cache[key] = value
        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Return a deep copy of the stored value, or ``default``."""
        value = self._load(key)
        if value is None:
            return default
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        """Overwrite the value stored under ``key``."""
        async with self._lock:
            await self._write(key, value)

    async def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            json_data = json.dumps(value, indent=2, ensure_ascii=False)

            temp_file = f"{path}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)

            os.replace(temp_file, path)
            self._cache[key] = copy.deepcopy(value)
            logger.debug(f"Saved store key '{key}'")

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save store key '{key}': {e}")
            raise StorageError(
                ErrorCode.E802_STORAGE_WRITE_FAILED,
                f"Cannot save '{key}': {e}",
                {"path": str(path)},
            ) from e

    async def append(
        self,
        key: str,
        item: Any,
        unique_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> bool:
        """
        Append an item to the list stored under ``key``.

        Args:
            key: Store key holding a list
            item: Item to append
            unique_by: Field name; when set, an item whose field matches an
                existing entry is not appended
            limit: Keep only the newest ``limit`` entries

        Returns:
            True if the item was appended
        """
        async with self._lock:
            items: List[Any] = list(self._load(key) or [])
            if unique_by is not None:
                if any(existing.get(unique_by) == item.get(unique_by) for existing in items):
                    return False
            items.append(item)
            if limit is not None and len(items) > limit:
                items = items[-limit:]
            await self._write(key, items)
            return True

    async def update_item(
        self,
        key: str,
        item_id: str,
        updates: Dict[str, Any],
        id_field: str = "id",
    ) -> bool:
        """Merge ``updates`` into the list entry whose ``id_field`` matches."""
        async with self._lock:
            items: List[Dict[str, Any]] = list(self._load(key) or [])
            for index, existing in enumerate(items):
                if existing.get(id_field) == item_id:
                    items[index] = {**existing, **updates}
                    await self._write(key, items)
                    return True
            return False

    async def remove_item(self, key: str, item_id: str, id_field: str = "id") -> bool:
        """Remove the list entry whose ``id_field`` matches."""
        async with self._lock:
            items: List[Dict[str, Any]] = list(self._load(key) or [])
            kept = [existing for existing in items if existing.get(id_field) != item_id]
            if len(kept) == len(items):
                return False
            await self._write(key, kept)
            return True

    async def delete(self, key: str) -> None:
        """Remove the document stored under ``key``."""
        async with self._lock:
            path = self._path(key)
            try:
                if path.exists():
                    path.unlink()
            except OSError as e:
                raise StorageError(
                    ErrorCode.E802_STORAGE_WRITE_FAILED,
                    f"Cannot delete '{key}': {e}",
                    {"path": str(path)},
                ) from e
            self._cache.pop(key, None)
