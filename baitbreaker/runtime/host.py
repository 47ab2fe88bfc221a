from __future__ import annotations

import asyncio
import logging
import time
import weakref
from typing import Any, Awaitable, Callable, Protocol

from baitbreaker.channel.errors import TransportClosed, TransportDead
from baitbreaker.channel.pending import PendingRequests
from baitbreaker.metrics.metrics import Metrics


logger = logging.getLogger(__name__)


TERMINATE_IDLE = "idle"
TERMINATE_FORCED = "forced"
TERMINATE_INVALIDATED = "invalidated"
TERMINATE_SHUTDOWN = "shutdown"


class Receiver(Protocol):
    def receive(self, envelope: "Envelope") -> None: ...

    def kill(self, reason: str) -> None: ...


class Envelope:
    """One request in flight from a requester to the coordinator.

    Exactly one terminal outcome takes effect: a response or a close.
    """

    def __init__(self, correlation_id: str, payload: dict, on_settle: Callable[[str, Any, BaseException | None], None]):
        self.correlation_id = correlation_id
        self.payload = payload
        self._on_settle = on_settle
        self._settled = False

    @property
    def action(self) -> str:
        return str(self.payload.get("action", ""))

    @property
    def settled(self) -> bool:
        return self._settled

    def respond(self, response: Any) -> bool:
        if self._settled:
            return False
        self._settled = True
        self._on_settle(self.correlation_id, response, None)
        return True

    def close(self, reason: str) -> bool:
        if self._settled:
            return False
        self._settled = True
        self._on_settle(
            self.correlation_id,
            None,
            TransportClosed(f"message channel closed before a response was received ({reason})"),
        )
        return True


class RuntimeHandle:
    """A requester's view of the coordinator.

    Holds the host weakly: once the host is gone or invalidated the handle
    stays dead for good.
    """

    def __init__(self, host: "CoordinatorHost") -> None:
        self._host_ref = weakref.ref(host)
        self._pending = PendingRequests()

    def _host(self) -> "CoordinatorHost":
        host = self._host_ref()
        if host is None:
            raise RuntimeError("coordinator host has been released")
        return host

    @property
    def runtime_id(self) -> str | None:
        host = self._host()
        return host.runtime_id

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _settle(self, correlation_id: str, response: Any, error: BaseException | None) -> None:
        if error is None:
            delivered = self._pending.resolve(correlation_id, response)
        else:
            delivered = self._pending.fail(correlation_id, error)
        if not delivered:
            logger.debug("discarding late reply for correlation_id=%s", correlation_id)

    def _fail_pending(self, exc_factory: Callable[[], BaseException]) -> int:
        return self._pending.fail_all(exc_factory)

    async def send_message(self, payload: dict) -> Any:
        host = self._host_ref()
        if host is None or not host.valid:
            raise TransportDead("extension context invalidated")

        correlation_id, fut = self._pending.register()
        try:
            await host.deliver(Envelope(correlation_id, payload, self._settle))
            return await fut
        finally:
            self._pending.discard(correlation_id)


class CoordinatorHost:
    """Runs the coordinator the way a browser runs a service worker.

    The coordinator is spawned lazily when a message arrives, each spawn
    being a new generation with fresh in-memory state. A watchdog terminates
    it after ``idle_timeout_seconds`` without activity; ``terminate`` may also
    be called at any moment. In-flight requests of a terminated coordinator
    see a closed channel. ``invalidate`` kills every handle permanently.
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[Receiver]],
        idle_timeout_seconds: float = 30.0,
        watchdog_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Metrics | None = None,
        runtime_id: str = "baitbreaker",
    ) -> None:
        self._factory = factory
        self._idle_timeout = float(idle_timeout_seconds)
        self._watchdog_interval = (
            float(watchdog_interval_seconds)
            if watchdog_interval_seconds is not None
            else max(0.05, self._idle_timeout / 10)
        )
        self._clock = clock
        self._metrics = metrics
        self._runtime_id = runtime_id

        self._coordinator: Receiver | None = None
        self._spawn_lock = asyncio.Lock()
        self._handles: weakref.WeakSet[RuntimeHandle] = weakref.WeakSet()
        self._watchdog: asyncio.Task | None = None
        self._last_activity = clock()
        self._valid = True
        self.generation = 0

    @property
    def valid(self) -> bool:
        return self._valid

    @property
    def runtime_id(self) -> str | None:
        return self._runtime_id if self._valid else None

    @property
    def running(self) -> bool:
        return self._coordinator is not None

    def handle(self) -> RuntimeHandle:
        h = RuntimeHandle(self)
        self._handles.add(h)
        return h

    def touch(self) -> None:
        self._last_activity = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self._last_activity

    async def start(self) -> None:
        if self._watchdog is None:
            self._watchdog = asyncio.create_task(self._watch_idle(), name="coordinator_idle_watchdog")

    async def _watch_idle(self) -> None:
        while True:
            await asyncio.sleep(self._watchdog_interval)
            try:
                if self._coordinator is not None and self.idle_for() >= self._idle_timeout:
                    logger.info("coordinator idle for %.1fs, terminating", self.idle_for())
                    self.terminate(TERMINATE_IDLE)
            except Exception:
                logger.exception("idle watchdog failed")

    async def _ensure_coordinator(self) -> Receiver:
        async with self._spawn_lock:
            if self._coordinator is None:
                self.generation += 1
                logger.info("spawning coordinator generation=%s", self.generation)
                self._coordinator = await self._factory()
                if self._metrics is not None:
                    self._metrics.coordinator_spawns_total.inc()
            return self._coordinator

    async def deliver(self, envelope: Envelope) -> None:
        if not self._valid:
            raise TransportDead("extension context invalidated")
        self.touch()
        try:
            coordinator = await self._ensure_coordinator()
        except Exception as e:
            logger.exception("coordinator failed to start")
            raise TransportClosed(f"receiving end does not exist: {e}") from e
        if not self._valid:
            raise TransportDead("extension context invalidated")
        coordinator.receive(envelope)

    def terminate(self, reason: str = TERMINATE_FORCED) -> bool:
        coordinator = self._coordinator
        if coordinator is None:
            return False
        self._coordinator = None
        logger.warning("terminating coordinator generation=%s reason=%s", self.generation, reason)
        coordinator.kill(reason)
        if self._metrics is not None:
            self._metrics.coordinator_terminations_total.labels(reason=reason).inc()
        return True

    def invalidate(self) -> None:
        if not self._valid:
            return
        self._valid = False
        logger.warning("runtime invalidated; all handles are now dead")
        for h in list(self._handles):
            h._fail_pending(lambda: TransportDead("extension context invalidated"))
        self.terminate(TERMINATE_INVALIDATED)

    async def aclose(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            await asyncio.gather(self._watchdog, return_exceptions=True)
            self._watchdog = None
        self.terminate(TERMINATE_SHUTDOWN)
