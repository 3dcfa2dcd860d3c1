"""Per-key lock registry for single-writer access to student state."""

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Hashable, Iterator

logger = logging.getLogger(__name__)


class _KeyLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


class KeyedLockRegistry:
    """Thread-safe weak reference registry of locks keyed by e.g. ``(student, subject)``.

    Locks exist only while someone holds or waits on them, so the registry
    does not grow with the number of students ever seen. Different keys never
    contend; callers on the same key are serialised and simply wait.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, _KeyLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _lock_for(self, key: Hashable) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Acquire the lock for ``key``, waiting if another writer holds it."""
        entry = self._lock_for(key)
        if not entry.lock.acquire(blocking=False):
            logger.debug("Waiting for state lock %s", key)
            entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
