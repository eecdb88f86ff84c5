from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .errors import SessionExpiredError, SyncError

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[object]]


class IntervalPoller:
    """Runs ``tick`` every ``interval_s`` seconds until stopped.

    Sync failures are logged and the loop carries on with the previous state.
    A ``SessionExpiredError`` ends the loop: the expiry signal has already
    fired and retrying with the same credential would only fail again.
    """

    def __init__(self, interval_s: float, tick: Tick, *, name: str) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.interval_s = interval_s
        self.name = name
        self._tick = tick
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"poll:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                self.ticks += 1
                try:
                    await self._tick()
                except SessionExpiredError:
                    logger.info("%s poll stopped: session expired", self.name)
                    return
                except SyncError as exc:
                    logger.warning("%s poll failed, keeping previous state: %s", self.name, exc)
        except asyncio.CancelledError:
            return
