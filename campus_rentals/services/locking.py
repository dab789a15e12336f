from __future__ import annotations

import threading
import weakref
from typing import Hashable


class KeyedLocks:
    """Process-local locks, one per key.

    Entries are weakly held, so a key's lock is dropped once no thread is
    holding or waiting on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)
