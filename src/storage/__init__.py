"""
Storage abstraction layer for ResolveChain.

Records are kept in keyed stores, one per namespace:

- memory (default): in-process map, lost on exit
- json: one JSON file per namespace under RESOLVECHAIN_DATA_DIR

Usage:
    from storage import get_storage_backend

    issues = get_storage_backend("issues")
    issues.put("issue-1", {"id": "issue-1", ...})
    current = issues.get("issue-1")
"""

import os

from storage.base import KeyedStore, StorageError
from storage.json_file import JSONFileStore
from storage.memory import MemoryStore

__all__ = [
    "JSONFileStore",
    "KeyedStore",
    "MemoryStore",
    "StorageError",
    "get_storage_backend",
]


def get_storage_backend(namespace: str, backend_type: str | None = None,
                        data_dir: str | None = None) -> KeyedStore:
    """
    Get a keyed store for a namespace based on environment variables.

    Environment variables:
        STORAGE_BACKEND: Backend type ("memory", "json")
        RESOLVECHAIN_DATA_DIR: Directory for JSON files (default: ./data)

    Returns:
        Configured KeyedStore instance
    """
    backend_type = (backend_type or os.getenv("STORAGE_BACKEND", "memory")).lower()

    if backend_type == "memory":
        return MemoryStore()

    elif backend_type == "json":
        data_dir = data_dir or os.getenv("RESOLVECHAIN_DATA_DIR", "data")
        os.makedirs(data_dir, exist_ok=True)
        return JSONFileStore(os.path.join(data_dir, f"{namespace}.json"))

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
