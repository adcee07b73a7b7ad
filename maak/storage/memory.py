from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Optional

from maak.logging import get_logger


class MemoryKVStore:
    """In-process key-value store for tests and local development.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data: Dict[str, Any] = {}
        # RLock so nested acquisitions from the same thread are allowed
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[Any]:
        with self._data_lock:
            value = self._data.get(key)
            return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        with self._data_lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        with self._data_lock:
            self._data.pop(key, None)

    async def get_by_prefix(self, prefix: str) -> Dict[str, Any]:
        with self._data_lock:
            return {
                key: copy.deepcopy(value)
                for key, value in self._data.items()
                if key.startswith(prefix)
            }

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._data)


__all__ = ["MemoryKVStore"]
