"""Background jobs that run on the bot's event loop until told to stop."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional


class PeriodicTask:
    """Call :meth:`tick` every *interval* seconds between ``start`` and ``stop``.

    A failing tick is logged and the loop carries on.  ``stop`` waits at most
    *timeout* seconds and then cancels whatever tick is still running.
    """

    name = "periodic task"
    log = logging.getLogger("xui_bot.periodic")
    # Tick once right after start instead of waiting a full interval.
    run_at_start = False

    def __init__(self, interval: float):
        self.interval = interval
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> None:
        raise NotImplementedError

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        self.log.info("%s started (every %ss)", self.name, self.interval)

    async def _tick_logged(self) -> None:
        try:
            await self.tick()
        except Exception:
            self.log.exception("%s failed", self.name)

    async def _loop(self) -> None:
        if self.run_at_start:
            await self._tick_logged()
        while True:
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            await self._tick_logged()

    async def stop(self, timeout: float = 5.0) -> None:
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self.log.warning("%s did not stop within %ss, cancelled", self.name, timeout)
        finally:
            self._task = None
        self.log.info("%s stopped", self.name)
