"""Cancellable delayed wake-ups for the question cycle.

A :class:`Timer` replaces a bare ``asyncio.sleep``: the cycle can see how
long is left on the current wait, and ``complete`` can cut a wait short
without cancelling the task that is waiting on it.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class Timer:
    def __init__(self, delay: float, label: str = ""):
        self.delay = max(0.0, delay)
        self.label = label
        self._handle: Optional[asyncio.TimerHandle] = None
        self._future: Optional[asyncio.Future] = None
        self._deadline: Optional[float] = None

    def start(self) -> "Timer":
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._deadline = loop.time() + self.delay
        self._handle = loop.call_later(self.delay, self._fire)
        return self

    def _fire(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_result(True)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        if self._future is not None and not self._future.done():
            self._future.set_result(False)

    @property
    def started(self) -> bool:
        return self._future is not None

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    @property
    def cancelled(self) -> bool:
        return self.done and self._future.result() is False

    @property
    def remaining(self) -> float:
        if self._deadline is None:
            return self.delay
        if self.done:
            return 0.0
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    async def wait(self) -> bool:
        """Wait for the timer. True if it ran out, False if it was cancelled."""
        if self._future is None:
            self.start()
        return await asyncio.shield(self._future)


class Scheduler:
    """Builds timers, stretching or shrinking every delay by ``time_scale``."""

    def __init__(self, time_scale: float = 1.0):
        if time_scale <= 0:
            raise ValueError("time_scale must be positive")
        self.time_scale = time_scale

    def timer(self, seconds: float, label: str = "") -> Timer:
        return Timer(seconds * self.time_scale, label=label)
