from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from baitbreaker.cache.store import CacheStore
from baitbreaker.channel.errors import RequestError, RequestTimeout
from baitbreaker.metrics.metrics import Metrics
from baitbreaker.storage.types import SummaryRecord, Verdict
from baitbreaker.utils import truncate


logger = logging.getLogger(__name__)


ClassifierFn = Callable[[str], Awaitable[Verdict]]
FetchFn = Callable[[str], Awaitable[str]]
SummarizeFn = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class BatchResult:
    index: int
    verdict: Verdict | None
    cached: bool = False
    error: str | None = None

    @property
    def errored(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        if self.verdict is None:
            return {"is_clickbait": False, "error": True, "error_message": self.error or "classification failed"}
        return {
            "is_clickbait": bool(self.verdict.is_clickbait),
            "confidence": float(self.verdict.confidence),
            "reason": self.verdict.reason,
            "cached": self.cached,
        }


def chunked(items: Sequence, size: int) -> list[Sequence]:
    size = max(1, int(size))
    return [items[i : i + size] for i in range(0, len(items), size)]


class ClassifierOrchestrator:
    def __init__(
        self,
        cache: CacheStore,
        base_timeout_seconds: float = 30.0,
        per_item_timeout_seconds: float = 5.0,
        metrics: Metrics | None = None,
    ) -> None:
        self._cache = cache
        self._base_timeout = float(base_timeout_seconds)
        self._per_item_timeout = float(per_item_timeout_seconds)
        self._metrics = metrics

    def batch_timeout(self, count: int) -> float:
        return max(self._base_timeout, self._base_timeout + count * self._per_item_timeout)

    async def classify_batch(
        self,
        items: Sequence[str],
        classifier_fn: ClassifierFn,
        concurrency_limit: int,
        *,
        use_cache: bool = True,
        timeout_seconds: float | None = None,
    ) -> list[BatchResult]:
        """Classify ``items`` in sequential chunks of ``concurrency_limit``.

        The result list is index-aligned with ``items``. A classifier failure
        only marks its own item as errored; channel failures raised by the
        classifier abort the whole batch, as does the aggregate deadline.
        """
        items = list(items)
        if not items:
            return []

        deadline = self.batch_timeout(len(items)) if timeout_seconds is None else float(timeout_seconds)
        logger.info("classifying %s items (chunk=%s, deadline=%.1fs)", len(items), concurrency_limit, deadline)

        try:
            results = await asyncio.wait_for(
                self._run_chunks(items, classifier_fn, concurrency_limit, use_cache),
                deadline,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"classification timed out after {deadline:.1f}s") from e

        flagged = sum(1 for r in results if r.verdict is not None and r.verdict.is_clickbait)
        logger.info("classification complete: %s/%s flagged", flagged, len(results))
        return results

    async def _run_chunks(
        self,
        items: list[str],
        classifier_fn: ClassifierFn,
        concurrency_limit: int,
        use_cache: bool,
    ) -> list[BatchResult]:
        results: list[BatchResult] = []
        offset = 0
        for chunk in chunked(items, concurrency_limit):
            outcomes = await asyncio.gather(
                *(
                    self._classify_one(offset + i, text, classifier_fn, use_cache)
                    for i, text in enumerate(chunk)
                ),
                return_exceptions=True,
            )
            # every sibling has settled; surface the first channel failure
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            results.extend(outcomes)
            offset += len(chunk)
        return results

    async def _classify_one(self, index: int, text: str, classifier_fn: ClassifierFn, use_cache: bool) -> BatchResult:
        if use_cache:
            cached = await self._cache.get_classification(text)
            if cached is not None:
                logger.debug("cached classification for: %s", truncate(text, 50))
                self._count("cache")
                return BatchResult(index=index, verdict=cached.to_verdict(), cached=True)

        try:
            verdict = await classifier_fn(text)
        except RequestError:
            raise
        except Exception as e:
            logger.warning("classifier failed for item %s: %s", index, e)
            if self._metrics is not None:
                self._metrics.classification_errors_total.inc()
            return BatchResult(index=index, verdict=None, error=str(e) or type(e).__name__)

        if use_cache:
            await self._cache.save_classification(text, verdict)
        self._count("classifier")
        return BatchResult(index=index, verdict=verdict)

    def _count(self, source: str) -> None:
        if self._metrics is not None:
            self._metrics.classifications_total.labels(source=source).inc()

    async def summarize(
        self,
        url: str,
        fetch_fn: FetchFn,
        summarize_fn: SummarizeFn,
        *,
        timeout_seconds: float = 30.0,
    ) -> SummaryRecord:
        cached = await self._cache.get_summary(url)
        if cached is not None:
            if self._metrics is not None:
                self._metrics.summaries_total.labels(source="cache").inc()
            return cached

        async def _produce() -> SummaryRecord:
            text = await fetch_fn(url)
            summary = await summarize_fn(text)
            return await self._cache.save_summary(url, summary)

        try:
            record = await asyncio.wait_for(_produce(), timeout_seconds)
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"summary generation timed out after {timeout_seconds:.1f}s") from e

        if self._metrics is not None:
            self._metrics.summaries_total.labels(source="fresh").inc()
        return record
