"""
Per-key lock registry

Attempts and assignments are independent of each other, so each id gets its
own re-entrant lock instead of one global lock.

Locks are held weakly: an entry lives only while some thread holds, waits
on or references its lock, so the registry does not grow with every
attempt and assignment ever seen.
"""
import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Hashable, Iterator

logger = logging.getLogger(__name__)


class KeyedLock:
    """Re-entrant lock for one key"""

    def __init__(self):
        self._lock = threading.RLock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        return self._lock.acquire(blocking, timeout)

    def release(self) -> None:
        self._lock.release()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


class KeyedLockRegistry:
    """Hands out one KeyedLock per (namespace, key) pair"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def get(self, namespace: str, key: Hashable) -> KeyedLock:
        with self._guard:
            lock = self._locks.get((namespace, key))
            if lock is None:
                lock = KeyedLock()
                self._locks[(namespace, key)] = lock
            return lock

    @contextmanager
    def hold(self, namespace: str, key: Hashable) -> Iterator[None]:
        """Hold the lock for one key for the duration of the block"""
        lock = self.get(namespace, key)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


# Global instance
lock_registry = KeyedLockRegistry()
