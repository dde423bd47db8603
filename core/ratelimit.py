"""Per-user fixed-window admission control."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict

log = logging.getLogger("xui_bot.ratelimit")

DEFAULT_CAPACITY = 10
DEFAULT_WINDOW = 60.0


@dataclass
class RateLimitEntry:
    count: int
    window_end: float


class RateLimiter:
    """Counts admitted calls per user inside a fixed window.

    The first call for a user, or the first call after ``window_end`` has
    passed, replaces the entry with ``count=1``.  Inside the window a call is
    admitted while ``count < capacity``.  Denial is advisory: callers decide
    what to do with it (the bot drops the event silently).  Administrators
    are expected never to reach :meth:`admit`.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity if capacity > 0 else DEFAULT_CAPACITY
        self.window = float(window) if window > 0 else DEFAULT_WINDOW
        self._clock = clock
        self._entries: Dict[int, RateLimitEntry] = {}
        self._lock = Lock()

    def admit(self, user_id: int) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or now > entry.window_end:
                self._entries[user_id] = RateLimitEntry(1, now + self.window)
                return True
            if entry.count >= self.capacity:
                return False
            entry.count += 1
            return True

    def get(self, user_id: int) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get(user_id)
            return RateLimitEntry(entry.count, entry.window_end) if entry else None

    def purge(self) -> int:
        """Drop entries whose window closed more than one window-length ago."""
        now = self._clock()
        with self._lock:
            stale = [
                uid for uid, entry in self._entries.items()
                if now > entry.window_end + self.window
            ]
            for uid in stale:
                del self._entries[uid]
        if stale:
            log.debug("purged %d rate-limit entries", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
