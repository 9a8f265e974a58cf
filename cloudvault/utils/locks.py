import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    """Hands out one re-entrant lock per key, so writers to the same entity queue up
    while writers to different entities run in parallel."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)
