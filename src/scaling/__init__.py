"""
Concurrency infrastructure for ResolveChain.

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()
    with lock_manager.lock("custody:coinbase:withdrawal_delays"):
        submit_attestation()
"""

from scaling.locking import (
    LocalLockManager,
    LockInfo,
    LockManager,
    custody_lock_name,
    issue_lock_name,
    resolution_lock_name,
)

__all__ = [
    "LockInfo",
    "LockManager",
    "LocalLockManager",
    "custody_lock_name",
    "get_lock_manager",
    "issue_lock_name",
    "resolution_lock_name",
]

_lock_manager: LockManager | None = None


def get_lock_manager() -> LockManager:
    """Get the process-wide lock manager."""
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = LocalLockManager()
    return _lock_manager
