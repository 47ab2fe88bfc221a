from __future__ import annotations

import logging
from typing import Any, Callable

from baitbreaker.metrics.metrics import Metrics
from baitbreaker.storage.kv import KeyValueStore
from baitbreaker.storage.types import (
    CACHE_KINDS,
    KIND_CLASSIFICATION,
    KIND_SUMMARY,
    CacheEntry,
    ClassificationRecord,
    SummaryRecord,
    Verdict,
)
from baitbreaker.utils import canonicalize_url, normalize_text, now_ts, sha256_hex


logger = logging.getLogger(__name__)


DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_SIZE = 1000

_KEY_PREFIX = {
    KIND_CLASSIFICATION: "class_",
    KIND_SUMMARY: "summary_",
}


def classification_key(text: str) -> str:
    return _KEY_PREFIX[KIND_CLASSIFICATION] + sha256_hex(normalize_text(text))


def summary_key(url: str) -> str:
    return _KEY_PREFIX[KIND_SUMMARY] + sha256_hex(canonicalize_url(url))


def _decode(key: str, value: Any) -> CacheEntry | None:
    if not isinstance(value, dict):
        return None
    kind = value.get("type")
    data = value.get("data")
    written_at = value.get("timestamp")
    if kind not in CACHE_KINDS or not isinstance(data, dict) or not isinstance(written_at, (int, float)):
        return None

    try:
        if kind == KIND_CLASSIFICATION:
            record = ClassificationRecord(
                key=key,
                is_clickbait=bool(data.get("is_clickbait")),
                confidence=float(data.get("confidence") or 0.0),
                reason=str(data.get("reason") or ""),
                written_at=float(written_at),
            )
        else:
            record = SummaryRecord(
                key=key,
                text=str(data.get("text") or ""),
                url=str(data.get("url") or ""),
                written_at=float(written_at),
            )
    except (TypeError, ValueError) as e:
        logger.warning("cache entry %s is malformed, ignoring: %s", key, e)
        return None
    return CacheEntry(kind=kind, record=record)


def _encode(entry: CacheEntry) -> dict:
    rec = entry.record
    if isinstance(rec, ClassificationRecord):
        data = {"is_clickbait": rec.is_clickbait, "confidence": rec.confidence, "reason": rec.reason}
    else:
        data = {"text": rec.text, "url": rec.url}
    return {"type": entry.kind, "data": data, "timestamp": rec.written_at}


class CacheStore:
    """TTL and size bounded cache of classification and summary records.

    Only the coordinator writes here. Every storage fault is logged and turned
    into a miss (reads) or a no-op (writes); nothing raises to the caller.

    Size is bounded per kind: when a kind holds more than ``max_size`` entries
    the ones with the oldest ``written_at`` go first, regardless of how
    recently they were read. Keys that do not belong to either kind are never
    evicted, expired or cleared.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = now_ts,
        metrics: Metrics | None = None,
    ) -> None:
        self._storage = storage
        self._ttl = float(ttl_seconds)
        self._max_size = max(1, int(max_size))
        self._clock = clock
        self._metrics = metrics

    def _storage_fault(self, op: str, exc: Exception) -> None:
        logger.warning("cache storage %s failed, degrading: %s", op, exc)
        if self._metrics is not None:
            self._metrics.cache_storage_errors_total.inc()

    def _count(self, counter: str, kind: str) -> None:
        if self._metrics is not None:
            getattr(self._metrics, counter).labels(kind=kind).inc()

    async def initialize(self) -> None:
        removed = await self.clean_expired()
        if removed:
            logger.info("cache: dropped %s expired entries", removed)

    async def _get(self, key: str, kind: str) -> CacheEntry | None:
        try:
            raw = await self._storage.get(key)
        except Exception as e:
            self._storage_fault("get", e)
            return None

        entry = _decode(key, raw) if raw is not None else None
        if entry is None or entry.kind != kind or not entry.is_valid(self._clock(), self._ttl):
            self._count("cache_misses_total", kind)
            return None
        self._count("cache_hits_total", kind)
        return entry

    async def _put(self, entry: CacheEntry) -> None:
        try:
            await self._storage.set(entry.record.key, _encode(entry))
        except Exception as e:
            self._storage_fault("set", e)
            return
        await self.enforce_max_size(entry.kind)

    async def get_classification(self, text: str) -> ClassificationRecord | None:
        entry = await self._get(classification_key(text), KIND_CLASSIFICATION)
        return entry.record if entry is not None else None

    async def save_classification(self, text: str, verdict: Verdict) -> ClassificationRecord:
        record = ClassificationRecord(
            key=classification_key(text),
            is_clickbait=bool(verdict.is_clickbait),
            confidence=float(verdict.confidence),
            reason=verdict.reason or "",
            written_at=self._clock(),
        )
        await self._put(CacheEntry(kind=KIND_CLASSIFICATION, record=record))
        return record

    async def get_summary(self, url: str) -> SummaryRecord | None:
        entry = await self._get(summary_key(url), KIND_SUMMARY)
        return entry.record if entry is not None else None

    async def save_summary(self, url: str, text: str) -> SummaryRecord:
        record = SummaryRecord(key=summary_key(url), text=text, url=url, written_at=self._clock())
        await self._put(CacheEntry(kind=KIND_SUMMARY, record=record))
        return record

    async def _scan(self) -> tuple[dict[str, CacheEntry], list[str]] | None:
        """Decoded cache entries, plus cache-prefixed keys that failed to decode."""
        try:
            raw = await self._storage.get_all()
        except Exception as e:
            self._storage_fault("get_all", e)
            return None
        entries: dict[str, CacheEntry] = {}
        malformed: list[str] = []
        for key, value in raw.items():
            entry = _decode(key, value)
            if entry is not None:
                entries[key] = entry
            elif key.startswith(tuple(_KEY_PREFIX.values())):
                malformed.append(key)
        return entries, malformed

    async def _entries(self) -> dict[str, CacheEntry] | None:
        scanned = await self._scan()
        return scanned[0] if scanned is not None else None

    async def _remove(self, keys: list[str]) -> bool:
        if not keys:
            return True
        try:
            await self._storage.remove(keys)
        except Exception as e:
            self._storage_fault("remove", e)
            return False
        return True

    async def enforce_max_size(self, kind: str) -> int:
        entries = await self._entries()
        if entries is None:
            return 0
        same_kind = [e for e in entries.values() if e.kind == kind]
        overflow = len(same_kind) - self._max_size
        if overflow <= 0:
            return 0

        same_kind.sort(key=lambda e: e.written_at)
        victims = [e.record.key for e in same_kind[:overflow]]
        if not await self._remove(victims):
            return 0
        logger.debug("cache: evicted %s %s entries", len(victims), kind)
        if self._metrics is not None:
            self._metrics.cache_evictions_total.labels(kind=kind).inc(len(victims))
        return len(victims)

    async def clean_expired(self) -> int:
        scanned = await self._scan()
        if scanned is None:
            return 0
        entries, malformed = scanned
        now = self._clock()
        expired = [key for key, e in entries.items() if not e.is_valid(now, self._ttl)] + malformed
        if not await self._remove(expired):
            return 0
        return len(expired)

    async def clear_all(self) -> int:
        scanned = await self._scan()
        if scanned is None:
            return 0
        entries, malformed = scanned
        keys = list(entries) + malformed
        if not await self._remove(keys):
            return 0
        if keys:
            logger.info("cache: cleared %s entries", len(keys))
        return len(keys)

    async def get_stats(self) -> dict[str, int]:
        entries = await self._entries() or {}
        classification = sum(1 for e in entries.values() if e.kind == KIND_CLASSIFICATION)
        summary = sum(1 for e in entries.values() if e.kind == KIND_SUMMARY)
        return {
            "classification": classification,
            "summary": summary,
            "total": classification + summary,
        }
