from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Hashable, Iterator, List


class KeyedLock:
    """One ``threading.Lock`` per key, alive only while someone uses it.

    ``with keyed(key):`` takes the lock for *key*.  Each entry counts its
    holders and waiters and is dropped when the last one leaves, so the map
    stays as small as the set of keys currently being worked on.

    Only ever hold these around plain dictionary work; never across a panel
    or gateway call.
    """

    def __init__(self):
        # key -> [lock, holders and waiters]
        self._locks: Dict[Hashable, List] = {}
        self._guard = Lock()

    @contextmanager
    def __call__(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
