from __future__ import annotations

import contextlib
import threading
from typing import Dict, Hashable, Iterator


class KeyedLocks:
    """Per-key mutexes that are created on demand and dropped when unused.

    Holders of different keys never contend; holders of the same key are
    serialized. Entries are reference counted so the table only grows with
    the number of keys currently in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, list] = {}

    @contextlib.contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
