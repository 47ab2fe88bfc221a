"""Keepalive for the coordinator while it has outstanding work."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterator

from baitbreaker.metrics.metrics import Metrics


logger = logging.getLogger(__name__)


class Heartbeat:
    """Reference-counted periodic liveness signal.

    The first ``start()`` launches the ping task, the matching last ``stop()``
    cancels it; nested operations share one timer. ``stop()`` without an
    outstanding ``start()`` does nothing.

    Example:
        hb = Heartbeat(beat=host_touch, interval_seconds=5)

        with hb.guard():
            await long_running_work()
    """

    def __init__(
        self,
        beat: Callable[[], Awaitable[None]],
        interval_seconds: float,
        metrics: Metrics | None = None,
    ) -> None:
        self._beat = beat
        self._interval = max(0.01, float(interval_seconds))
        self._metrics = metrics
        self._outstanding = 0
        self._task: asyncio.Task | None = None
        self.beats = 0

    @property
    def active(self) -> bool:
        return self._task is not None

    @property
    def outstanding(self) -> int:
        return self._outstanding

    def start(self) -> None:
        self._outstanding += 1
        if self._task is None:
            logger.debug("heartbeat starting (interval=%.2fs)", self._interval)
            self._task = asyncio.get_running_loop().create_task(self._run(), name="coordinator_heartbeat")

    def stop(self) -> None:
        if self._outstanding == 0:
            return
        self._outstanding -= 1
        if self._outstanding == 0:
            self._cancel()

    def close(self) -> None:
        self._outstanding = 0
        self._cancel()

    def _cancel(self) -> None:
        if self._task is not None:
            logger.debug("heartbeat stopping after %s beats", self.beats)
            self._task.cancel()
            self._task = None

    @contextmanager
    def guard(self) -> Iterator["Heartbeat"]:
        self.start()
        try:
            yield self
        finally:
            self.stop()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.beats += 1
            logger.debug("keepalive ping #%s", self.beats)
            if self._metrics is not None:
                self._metrics.heartbeat_beats_total.inc()
            try:
                await self._beat()
            except Exception:
                logger.exception("keepalive beat failed")
