from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from baitbreaker.cache.store import CacheStore
from baitbreaker.channel.errors import RequestError
from baitbreaker.config import DETECTION_HEURISTIC, DETECTION_MODEL, clamp_sensitivity
from baitbreaker.coordinator.heartbeat import Heartbeat
from baitbreaker.coordinator.orchestrator import BatchResult, ClassifierOrchestrator
from baitbreaker.fetcher.errors import FetchError
from baitbreaker.metrics.metrics import Metrics
from baitbreaker.runtime.host import Envelope
from baitbreaker.storage.types import Verdict


logger = logging.getLogger(__name__)


ACTION_CLASSIFY = "classifyLinks"
ACTION_SUMMARY = "getSummary"
ACTION_CLEAR_CACHE = "clearCache"
ACTION_CACHE_STATS = "getCacheStats"

# served even when initialization failed
_ADMIN_ACTIONS = {ACTION_CLEAR_CACHE, ACTION_CACHE_STATS}
# long-running; hold the heartbeat while they run
_GUARDED_ACTIONS = {ACTION_CLASSIFY, ACTION_SUMMARY}


def error_response(message: str, kind: str | None = None) -> dict:
    out: dict = {"error": True, "message": message}
    if kind:
        out["kind"] = kind
    return out


def apply_sensitivity(verdict: Verdict, sensitivity) -> Verdict:
    threshold = clamp_sensitivity(sensitivity) / 10
    flagged = bool(verdict.is_clickbait) and float(verdict.confidence or 0.0) >= threshold
    return Verdict(is_clickbait=flagged, confidence=verdict.confidence, reason=verdict.reason)


class Coordinator:
    """Long-lived worker owning the cache.

    One instance per host generation. Every message is handled by a detached
    task that always ends in exactly one terminal callback on its envelope:
    the handler's result, a synthesized error response, or a channel close
    when this generation is killed.
    """

    def __init__(
        self,
        cache: CacheStore,
        orchestrator: ClassifierOrchestrator,
        heuristic,
        model,
        fetcher,
        heartbeat: Heartbeat,
        concurrency_limit: int = 5,
        summary_timeout_seconds: float = 30.0,
        metrics: Metrics | None = None,
    ) -> None:
        self.cache = cache
        self.orchestrator = orchestrator
        self.heuristic = heuristic
        self.model = model
        self.fetcher = fetcher
        self.heartbeat = heartbeat
        self.concurrency_limit = max(1, int(concurrency_limit))
        self.summary_timeout_seconds = float(summary_timeout_seconds)
        self.metrics = metrics

        self.initialized = False
        self.init_error: Exception | None = None
        self.killed = False
        self._inflight: dict[str, tuple[Envelope, asyncio.Task]] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def initialize(self) -> None:
        try:
            await self.cache.initialize()
            self.initialized = True
            logger.info("coordinator initialized")
        except Exception as e:
            self.init_error = e
            logger.exception("coordinator failed to initialize")

    def receive(self, envelope: Envelope) -> None:
        if self.killed:
            envelope.close("coordinator already terminated")
            return
        task = asyncio.get_running_loop().create_task(
            self._dispatch(envelope),
            name=f"handle_{envelope.action}_{envelope.correlation_id[:8]}",
        )
        self._inflight[envelope.correlation_id] = (envelope, task)

    async def _dispatch(self, envelope: Envelope) -> None:
        action = envelope.action
        guarded = action in _GUARDED_ACTIONS
        started = time.perf_counter()
        if guarded:
            self.heartbeat.start()
        try:
            try:
                result = await self.handle_message(envelope.payload)
            except asyncio.CancelledError:
                envelope.close("coordinator terminated mid-request")
                raise
            except Exception as e:
                logger.exception("error handling %s", action)
                kind = e.error_type if isinstance(e, (RequestError, FetchError)) else None
                result = error_response(str(e) or type(e).__name__, kind)

            if self.metrics is not None:
                self.metrics.requests_total.labels(action=action).inc()
                self.metrics.request_latency_seconds.labels(action=action).observe(time.perf_counter() - started)
                if isinstance(result, dict) and result.get("error"):
                    self.metrics.request_errors_total.labels(action=action).inc()

            if not envelope.respond(result):
                logger.debug("reply for %s dropped, envelope already settled", action)
        finally:
            if guarded:
                self.heartbeat.stop()
            self._inflight.pop(envelope.correlation_id, None)

    async def handle_message(self, request: dict) -> Any:
        action = request.get("action") if isinstance(request, dict) else None
        logger.debug("received message: %s", action)

        if not self.initialized and action not in _ADMIN_ACTIONS:
            if self.init_error is not None:
                return error_response(f"Service failed to initialize: {self.init_error}")
            return error_response("Service not initialized.")

        if action == ACTION_CLASSIFY:
            return await self.classify_links(
                request.get("links") or [],
                request.get("detection_mode") or DETECTION_HEURISTIC,
                request.get("sensitivity"),
            )
        if action == ACTION_SUMMARY:
            return await self.get_summary(str(request.get("url") or ""))
        if action == ACTION_CLEAR_CACHE:
            cleared = await self.cache.clear_all()
            return {"success": True, "cleared": cleared}
        if action == ACTION_CACHE_STATS:
            return await self.cache.get_stats()

        logger.warning("unknown action: %s", action)
        return error_response(f"Unknown action: {action}")

    async def classify_links(self, links: list, detection_mode: str, sensitivity) -> list[dict]:
        texts = [str((link or {}).get("text") or "") if isinstance(link, dict) else str(link) for link in links]

        if detection_mode == DETECTION_MODEL and self.model is not None and self.model.configured:
            results = await self.orchestrator.classify_batch(
                texts, self.model.classify, self.concurrency_limit, use_cache=True
            )
            return [self._adjusted(r, sensitivity) for r in results]

        if detection_mode == DETECTION_MODEL:
            logger.warning("model backend not configured, falling back to heuristic detection")

        # local and cheap; caching it would shadow model verdicts for the same text
        results = await self.orchestrator.classify_batch(
            texts, self.heuristic.classify, self.concurrency_limit, use_cache=False
        )
        return [r.to_dict() for r in results]

    @staticmethod
    def _adjusted(result: BatchResult, sensitivity) -> dict:
        if result.verdict is None:
            return result.to_dict()
        adjusted = BatchResult(
            index=result.index,
            verdict=apply_sensitivity(result.verdict, sensitivity),
            cached=result.cached,
        )
        return adjusted.to_dict()

    async def get_summary(self, url: str) -> str:
        if not url:
            raise ValueError("missing url")
        record = await self.orchestrator.summarize(
            url,
            self.fetcher.fetch_text,
            self.model.summarize,
            timeout_seconds=self.summary_timeout_seconds,
        )
        return record.text

    def kill(self, reason: str) -> None:
        """Host-initiated termination: close every in-flight exchange, drop timers."""
        self.killed = True
        inflight = list(self._inflight.values())
        self._inflight.clear()
        for envelope, task in inflight:
            envelope.close(f"coordinator {reason}")
            task.cancel()
        self.heartbeat.close()
        if inflight:
            logger.warning("coordinator killed (%s) with %s requests in flight", reason, len(inflight))
