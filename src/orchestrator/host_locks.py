"""
Per-host lock registry.

Serializes work that must not overlap for a single host (dialing a new
session, syncing its inventory) while letting different hosts proceed
independently.

Design:
- One lock per host id, created on demand
- Locks persist for the lifetime of the process
- Thread-safe access via meta-lock pattern
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator

logger = logging.getLogger(__name__)


class HostLockManager:
    """
    Manages per-host locks.

    Example:
        locks = HostLockManager("dial")

        with locks.acquire("web-01"):
            ...  # only one thread dials web-01 at a time
    """

    def __init__(self, purpose: str = "host"):
        self.purpose = purpose
        self._locks: Dict[str, threading.Lock] = {}
        self._meta_lock = threading.Lock()

    def get_lock(self, host_id: str) -> threading.Lock:
        """
        Get or create the lock for a host.

        If several threads ask for the same host at once, only one lock
        object is created.
        """
        with self._meta_lock:
            if host_id not in self._locks:
                logger.debug(f"Creating {self.purpose} lock for host: {host_id}")
                self._locks[host_id] = threading.Lock()
            return self._locks[host_id]

    @contextmanager
    def acquire(self, host_id: str) -> Generator[None, None, None]:
        """Hold the host's lock for the duration of the block."""
        lock = self.get_lock(host_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def forget(self, host_id: str) -> None:
        """Drop the lock of a host that left the directory (no-op if held)."""
        with self._meta_lock:
            lock = self._locks.get(host_id)
            if lock is not None and not lock.locked():
                del self._locks[host_id]

    def get_lock_status(self) -> Dict[str, bool]:
        """
        Get current lock status for all known hosts.

        Best-effort; intended for status output, not for synchronization.
        """
        with self._meta_lock:
            return {host_id: lock.locked() for host_id, lock in self._locks.items()}
