"""
In-memory keyed storage backend.

Useful for:
- Unit testing
- Development
- Single-process deployments that can afford to lose state on exit
"""

import copy
import threading
from typing import Any

from storage.base import KeyedStore


class MemoryStore(KeyedStore):
    """
    In-memory keyed store.

    All data is lost when the process exits. Thread-safe operations.
    """

    def __init__(self):
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def list(self, prefix: str = "") -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            return [
                (key, copy.deepcopy(value))
                for key, value in sorted(self._data.items())
                if key.startswith(prefix)
            ]

    def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any],
    ) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = copy.deepcopy(new)
            return True

    def delete(self, key: str, expected: dict[str, Any]) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            del self._data[key]
            return True

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["record_count"] = len(self._data)
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._data.clear()
