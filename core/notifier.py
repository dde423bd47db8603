"""Warn clients a few days before their subscription runs out."""

from __future__ import annotations

import asyncio
import logging
import time
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

import views
from core.gateway import Gateway
from core.periodic import PeriodicTask

DEFAULT_WARN_DAYS = (3, 1)
DEFAULT_INTERVAL = 60 * 60


def warning_threshold(expiry_ms: int, now_ms: int, warn_days: Iterable[int]) -> Optional[int]:
    """Smallest entry of *warn_days* the remaining time already fits in.

    ``None`` for unlimited or lapsed subscriptions and for ones still further
    out than every threshold.
    """
    if expiry_ms <= 0 or expiry_ms <= now_ms:
        return None
    left = expiry_ms - now_ms
    fitting = [d for d in warn_days if left <= d * views.DAY_MS]
    return min(fitting) if fitting else None


class ExpiryNotifier(PeriodicTask):
    """Each check lists the panel's clients and messages the ones close to expiry.

    A client is warned once per threshold.  Warning at the smallest threshold
    also marks every larger one, so a client first seen a few hours before
    expiry gets a single message.  The record is keyed by email and reset when
    the expiry changes, which is how an extension re-arms the warnings.
    """

    name = "expiry notifier"
    log = logging.getLogger("xui_bot.notifier")
    run_at_start = True

    def __init__(
        self,
        panel,
        gateway: Gateway,
        clock: Callable[[], float] = time.time,
        warn_days: Iterable[int] = DEFAULT_WARN_DAYS,
        interval: float = DEFAULT_INTERVAL,
    ):
        super().__init__(interval if interval > 0 else DEFAULT_INTERVAL)
        self.panel = panel
        self.gateway = gateway
        self.clock = clock
        self.warn_days: Tuple[int, ...] = tuple(sorted({int(d) for d in warn_days if int(d) > 0}))
        # email -> (expiry the warnings were for, thresholds already sent)
        self._warned: Dict[str, Tuple[int, Set[int]]] = {}
        self._lock = Lock()

    def _due(self, email: str, expiry_ms: int, threshold: int) -> bool:
        with self._lock:
            seen = self._warned.get(email)
            if seen is None or seen[0] != expiry_ms:
                return True
            return threshold not in seen[1]

    def _mark(self, email: str, expiry_ms: int, threshold: int) -> None:
        with self._lock:
            seen = self._warned.get(email)
            done = set(seen[1]) if seen and seen[0] == expiry_ms else set()
            done.update(d for d in self.warn_days if d >= threshold)
            self._warned[email] = (expiry_ms, done)

    async def check_once(self) -> int:
        """Send the warnings that are due; return how many were delivered."""
        if not self.warn_days:
            return 0
        loop = asyncio.get_running_loop()
        records, err = await loop.run_in_executor(None, self.panel.list_clients)
        if err:
            self.log.warning("expiry check skipped, panel unavailable: %s", err)
            return 0

        now_ms = int(self.clock() * 1000)
        delivered = 0
        for record in records:
            if not record.tg_id or not record.enabled:
                continue
            threshold = warning_threshold(record.expiry_ms, now_ms, self.warn_days)
            if threshold is None or not self._due(record.email, record.expiry_ms, threshold):
                continue
            sent = await self.gateway.send_text(
                record.tg_id,
                views.expiry_warning(record.email, record.expiry_ms, now_ms),
                views.renew_keyboard(),
            )
            if sent is None:
                continue
            self._mark(record.email, record.expiry_ms, threshold)
            delivered += 1
            self.log.info("warned %s (%s) about expiry within %s", record.tg_id, record.email, views.days_label(threshold))

        live = {r.email for r in records}
        with self._lock:
            for email in [e for e in self._warned if e not in live]:
                del self._warned[email]
        return delivered

    async def tick(self) -> None:
        await self.check_once()

    def __len__(self) -> int:
        with self._lock:
            return len(self._warned)
