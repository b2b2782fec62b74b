"""
Abstract base class for keyed storage backends.

Issues, resolutions, timelines and custody logs are all kept behind this
interface so the services can run on an in-process map, a JSON file, or a
networked database without changing their logic.
"""

from abc import ABC, abstractmethod
from typing import Any


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class KeyedStore(ABC):
    """
    Key -> JSON-compatible dict store.

    Values handed in and out are copies; mutating a returned value never
    changes stored state. compare_and_swap is the only primitive that
    callers may rely on for atomic read-modify-write.
    """

    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None:
        """
        Get the value stored under key.

        Returns:
            A copy of the value, or None if the key is absent

        Raises:
            StorageReadError: If reading fails
        """
        pass

    @abstractmethod
    def put(self, key: str, value: dict[str, Any]) -> None:
        """
        Store value under key unconditionally.

        Raises:
            StorageWriteError: If writing fails
        """
        pass

    @abstractmethod
    def list(self, prefix: str = "") -> list[tuple[str, dict[str, Any]]]:
        """
        List (key, value) pairs, optionally restricted to a key prefix.

        Pairs are ordered by key so a single snapshot is stable.
        """
        pass

    @abstractmethod
    def compare_and_swap(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any],
    ) -> bool:
        """
        Atomically replace the value under key if it still equals expected.

        Args:
            key: Record key
            expected: Value the caller last read (None means "key must be absent")
            new: Replacement value

        Returns:
            True if the swap happened, False if the current value differed
        """
        pass

    @abstractmethod
    def delete(self, key: str, expected: dict[str, Any]) -> bool:
        """
        Remove the record under key if it still equals expected.

        Returns:
            True if the record was removed
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the storage backend is available and ready."""
        pass

    def count(self, prefix: str = "") -> int:
        return len(self.list(prefix))

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
