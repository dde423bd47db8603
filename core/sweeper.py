"""Periodic retirement of stale in-memory state."""

from __future__ import annotations

import logging
from typing import Dict

from core.periodic import PeriodicTask

DEFAULT_TTL = 24 * 60 * 60
DEFAULT_INTERVAL = 60 * 60


class ExpirySweeper(PeriodicTask):
    """Every *interval* seconds drop whatever is older than *ttl* seconds.

    Each store expires its own entries under its own locks, so a sweep never
    races a transition on the same key.
    """

    name = "expiry sweeper"
    log = logging.getLogger("xui_bot.sweeper")

    def __init__(self, registrations, extensions, relay, rate_limiter,
                 ttl: float = DEFAULT_TTL, interval: float = DEFAULT_INTERVAL, broadcasts=None):
        super().__init__(interval if interval > 0 else DEFAULT_INTERVAL)
        self.registrations = registrations
        self.extensions = extensions
        self.relay = relay
        self.rate_limiter = rate_limiter
        self.broadcasts = broadcasts
        self.ttl = ttl if ttl > 0 else DEFAULT_TTL

    def sweep_once(self) -> Dict[str, int]:
        removed = {
            "registrations": self.registrations.expire(self.ttl),
            "relays": self.relay.expire(self.ttl),
            "rate_limits": self.rate_limiter.purge(),
            "extension_tickets": self.extensions.expire(self.ttl),
            "broadcasts": self.broadcasts.expire(self.ttl) if self.broadcasts is not None else 0,
        }
        if any(removed.values()):
            self.log.info("sweep removed %s", ", ".join(f"{k}={v}" for k, v in removed.items()))
        else:
            self.log.debug("sweep: nothing to remove")
        return removed

    async def tick(self) -> None:
        self.sweep_once()
