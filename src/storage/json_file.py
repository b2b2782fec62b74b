"""
JSON file keyed storage backend.

Persists a whole namespace (issues, resolutions, ...) as one JSON object
mapping keys to records. Every write rewrites the file through a temp file
and an atomic rename, so a crash never leaves a half-written document.
"""

import json
import os
import threading
from typing import Any

from storage.base import (
    KeyedStore,
    StorageError,
    StorageReadError,
    StorageWriteError,
)


class JSONFileStore(KeyedStore):
    """
    JSON file keyed store.

    The file is re-read on every operation so several stores (or processes
    with external locking) can share it; compare_and_swap is atomic within
    this process.
    """

    def __init__(self, file_path: str):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file
        """
        self.file_path = file_path
        self._lock = threading.RLock()

    def _load(self) -> dict[str, dict[str, Any]]:
        try:
            if not os.path.exists(self.file_path):
                return {}

            with open(self.file_path, "r", encoding="utf-8") as f:
                raw_data = f.read()

            if not raw_data.strip():
                return {}

            data = json.loads(raw_data)
            if not isinstance(data, dict):
                raise StorageReadError(f"Expected a JSON object in {self.file_path}")
            return data

        except FileNotFoundError:
            return {}
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e

    def _save(self, data: dict[str, dict[str, Any]]) -> None:
        try:
            payload = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)

            temp_path = f"{self.file_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(payload)

            os.replace(temp_path, self.file_path)

        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageWriteError(f"OS error: {e}") from e

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._load().get(key)

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def list(self, prefix: str = "") -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            data = self._load()
        return [(key, value) for key, value in sorted(data.items()) if key.startswith(prefix)]

    def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any],
    ) -> bool:
        with self._lock:
            data = self._load()
            if data.get(key) != expected:
                return False
            data[key] = new
            self._save(data)
            return True

    def delete(self, key: str, expected: dict[str, Any]) -> bool:
        with self._lock:
            data = self._load()
            if data.get(key) != expected:
                return False
            del data[key]
            self._save(data)
            return True

    def is_available(self) -> bool:
        """
        Check if file storage is available.

        Returns:
            True if the containing directory exists and is writable
        """
        directory = os.path.dirname(self.file_path) or "."
        return os.path.isdir(directory) and os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
        })

        if os.path.exists(self.file_path):
            try:
                info["file_size_bytes"] = os.stat(self.file_path).st_size
            except OSError:
                info["file_size_bytes"] = None

        return info

    def backup(self, backup_path: str | None = None) -> str:
        """
        Create a backup of the storage file.

        Args:
            backup_path: Path for backup file (default: adds a timestamped suffix)

        Returns:
            Path to the backup file

        Raises:
            StorageError: If backup fails
        """
        import shutil
        from datetime import datetime

        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = f"{self.file_path}.{timestamp}.backup"

        try:
            with self._lock:
                if not os.path.exists(self.file_path):
                    raise StorageError("No file to backup")
                shutil.copy2(self.file_path, backup_path)
                return backup_path
        except OSError as e:
            raise StorageError(f"Backup failed: {e}") from e
