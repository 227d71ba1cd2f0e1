"""
Keyed in-process lock.

Serializes work per key (e.g. a relation's unique tuple) while letting
different keys proceed in parallel. Entries are reference counted and dropped
when no holder or waiter remains, so the table does not grow with the key space.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLock:
    """Mutex per hashable key. Thread-safe; usable from asyncio.to_thread workers."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
