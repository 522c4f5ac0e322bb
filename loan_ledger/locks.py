"""
Keyed Lock Registry

One reentrant lock per entity key. Operations against the same loan or
borrower are totally ordered; operations on different keys run in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict


class KeyedLocks:
    """Registry of reentrant locks keyed by entity id"""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        full_key = f"{self.namespace}:{key}" if self.namespace else key
        with self._guard:
            lock = self._locks.get(full_key)
            if lock is None:
                lock = threading.RLock()
                self._locks[full_key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        """Hold the lock for ``key`` for the duration of the block"""
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
