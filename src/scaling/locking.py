"""
Per-key locking for ResolveChain.

Records are guarded at the granularity of a single key so independent
issues and resolutions never block each other:

    issue:<id>                      issue record read-modify-write
    resolution:<id>                 resolution record read-modify-write
    custody:["<exchange>","<cat>"]  serializes ledger writes per custody chain

Lock ordering is custody -> issue -> resolution. Code that needs more than
one lock takes them in that order.

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()

    with lock_manager.lock("issue:abc123", timeout=5):
        update_issue()
"""

import json
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass
class LockInfo:
    """Information about a held lock."""

    name: str
    holder_id: str
    acquired_at: float
    depth: int = 1


class LockManager(ABC):
    """
    Abstract base class for lock managers.

    All lock managers must implement acquire/release/is_locked.
    """

    @abstractmethod
    def acquire(self, name: str, timeout: float = 30.0) -> bool:
        """
        Acquire a named lock.

        Args:
            name: Lock identifier
            timeout: Maximum time to wait for lock (seconds)

        Returns:
            True if lock acquired, False if timeout
        """
        pass

    @abstractmethod
    def release(self, name: str) -> bool:
        """
        Release a named lock.

        Returns:
            True if lock was held and released, False otherwise
        """
        pass

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        pass

    @contextmanager
    def lock(self, name: str, timeout: float = 30.0):
        """
        Context manager for acquiring a lock.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout):
            raise TimeoutError(f"Could not acquire lock '{name}' within {timeout}s")
        try:
            yield
        finally:
            self.release(name)

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock (if held)."""
        return None


class LocalLockManager(LockManager):
    """
    Thread-based lock manager for single-process deployments.

    One reentrant lock per name, created on first use and dropped once no
    thread holds or waits for it.
    """

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        # Holders (per acquisition) plus waiters for each name
        self._users: dict[str, int] = {}
        self._lock_info: dict[str, LockInfo] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _checkout(self, name: str) -> threading.RLock:
        with self._meta_lock:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
                self._users[name] = 0
            self._users[name] += 1
            return self._locks[name]

    def _checkin(self, name: str) -> None:
        # Caller holds _meta_lock
        self._users[name] -= 1
        if self._users[name] == 0:
            del self._users[name]
            del self._locks[name]

    def acquire(self, name: str, timeout: float = 30.0) -> bool:
        lock = self._checkout(name)
        if not lock.acquire(timeout=timeout):
            with self._meta_lock:
                self._checkin(name)
            return False

        holder = f"{self._instance_id}:{threading.current_thread().name}"
        with self._meta_lock:
            info = self._lock_info.get(name)
            if info is not None and info.holder_id == holder:
                info.depth += 1
            else:
                self._lock_info[name] = LockInfo(
                    name=name,
                    holder_id=holder,
                    acquired_at=time.time(),
                )
        return True

    def release(self, name: str) -> bool:
        with self._meta_lock:
            lock = self._locks.get(name)
            if lock is None:
                return False
            try:
                lock.release()
            except RuntimeError:
                # Not held by this thread
                return False

            info = self._lock_info.get(name)
            if info is not None:
                info.depth -= 1
                if info.depth <= 0:
                    del self._lock_info[name]
            self._checkin(name)
        return True

    def lock_count(self) -> int:
        """Number of named locks currently tracked."""
        with self._meta_lock:
            return len(self._locks)

    def is_locked(self, name: str) -> bool:
        with self._meta_lock:
            return name in self._lock_info

    def get_info(self, name: str) -> LockInfo | None:
        with self._meta_lock:
            return self._lock_info.get(name)

    def get_all_locks(self) -> list[LockInfo]:
        """Get information about all held locks."""
        with self._meta_lock:
            return list(self._lock_info.values())


def issue_lock_name(issue_id: str) -> str:
    return f"issue:{issue_id}"


def resolution_lock_name(resolution_id: str) -> str:
    return f"resolution:{resolution_id}"


def custody_lock_name(exchange: str, category: str) -> str:
    return "custody:" + json.dumps([exchange, category], ensure_ascii=False)
