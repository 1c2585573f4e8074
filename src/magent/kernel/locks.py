from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    """A table of locks keyed by string (thread id, repository path).

    Entries are reference counted and dropped once no holder or waiter remains.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._locks[key] = lk
            self._refs[key] = self._refs.get(key, 0) + 1
        lk.acquire()
        try:
            yield
        finally:
            lk.release()
            with self._guard:
                n = self._refs.get(key, 1) - 1
                if n <= 0:
                    self._refs.pop(key, None)
                    self._locks.pop(key, None)
                else:
                    self._refs[key] = n

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
