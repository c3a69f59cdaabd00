"""In-process keyed locks.

``KeyedLock`` hands out one ``threading.Lock`` per key and forgets it once
no thread holds or waits for it, so the map stays bounded by the number of
keys in flight.
"""

import contextlib
import threading
from typing import Dict, Hashable, Iterator, Optional

from memtier.protocols import LockTimeout


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """Mutual exclusion per key.

    Usage::

        locks = KeyedLock()
        with locks.hold(("tenant", "user"), timeout=5):
            ...

    ``timeout=None`` waits forever; ``timeout=0`` only tries once.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _release(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                self._entries.pop(key, None)

    @contextlib.contextmanager
    def hold(
        self, key: Hashable, timeout: Optional[float] = None, error_factory=None
    ) -> Iterator[None]:
        """Hold the lock for *key*, raising LockTimeout if not acquired in time.

        ``error_factory(key, timeout)`` may build a more specific exception.
        """
        entry = self._checkout(key)
        try:
            if timeout is None:
                acquired = entry.lock.acquire()
            elif timeout <= 0:
                acquired = entry.lock.acquire(blocking=False)
            else:
                acquired = entry.lock.acquire(timeout=timeout)

            if not acquired:
                factory = error_factory or LockTimeout
                raise factory(key, timeout)

            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._release(key, entry)

    def locked(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
