"""
Per-key mutual exclusion.

Threads holding different keys never contend; a key's lock object exists
only while someone holds or waits for it.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """
    Mapping of key -> lock, created on demand and released when unused.

    Usage:
        locks = KeyedLock()
        with locks.hold(request_id):
            ...
    """

    def __init__(self):
        self._entries: dict[Hashable, _Entry] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)
