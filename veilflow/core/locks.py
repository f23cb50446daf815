"""
Per-entity write locks for the read-mostly registries.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class EntityLocks:
    """
    Hand out one lock per entity key.

    Readers never take these locks. Writers serialise only against other
    writers touching the same entity (a tag, a table binding, ...).

    Usage:
        locks = EntityLocks()
        with locks.hold(("tag", "PII")):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield
