"""
Per-volume operation locks.

One lock per dataset path; every mutating operation on a volume holds it.
Different volumes never contend.
"""

import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterable, Optional

from zvol_agent.truenas_api.errors import OperationInProgressError


class OperationLockRegistry:

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        # Holders plus waiters per key; the entry is dropped when it reaches zero
        self._users: Dict[str, int] = {}
        self._lock_lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        """Get or create the lock for a volume key and register one user of it"""
        with self._lock_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
                self._users[key] = 0
            self._users[key] += 1
            return self._locks[key]

    def _checkin(self, key: str):
        with self._lock_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        with self._lock_lock:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, key: str, blocking: bool = True, timeout: Optional[float] = None):
        """
        Hold the lock for ``key``.

        Blocks until free by default. With ``blocking=False`` (or when
        ``timeout`` expires) raises OperationInProgressError instead.
        """
        lock = self._checkout(key)
        try:
            if not blocking:
                acquired = lock.acquire(blocking=False)
            elif timeout is not None:
                acquired = lock.acquire(timeout=timeout)
            else:
                acquired = lock.acquire()
            if not acquired:
                raise OperationInProgressError(
                    f"Another operation is in progress for {key}",
                    error_code="LOCKED",
                    resources=[key],
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    @contextmanager
    def hold_many(self, keys: Iterable[str], blocking: bool = True, timeout: Optional[float] = None):
        """Hold several locks, always acquired in sorted order."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key, blocking=blocking, timeout=timeout))
            yield
